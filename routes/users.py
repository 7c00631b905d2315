import json

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import or_

from models import db
from models.audit_log import AuditLog
from models.refresh_token import RefreshToken
from models.session import Session
from models.user import Role, User
from security.password import hash_password, verify_password
from security.password_policy import validate_password
from security.rbac import require_roles
from security.session import (
    delete_other_sessions,
    delete_user_refresh_tokens,
    delete_user_sessions,
    purge_expired_refresh_tokens,
    purge_expired_sessions,
)
from utils.audit import log_event
from utils.auth_context import login_required
from utils.clock import utcnow
from utils.emailer import send_password_changed_email
from utils.errors import ApiError, AuthenticationFailed, NotFound, ValidationFailed, field_error
from utils.logging_config import get_logger

logger = get_logger(__name__)

users_bp = Blueprint("users", __name__, url_prefix="/users")

MAX_PAGE_SIZE = 100


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _pagination():
    page = request.args.get("page", type=int) or 1
    limit = request.args.get("limit", type=int) or 20
    return max(page, 1), max(1, min(limit, MAX_PAGE_SIZE))


def _page_meta(total, page, limit):
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


def _validate_full_name(value, errors):
    if not isinstance(value, str) or not 2 <= len(value.strip()) <= 120:
        errors.append(field_error("fullName", "Name must be between 2 and 120 characters"))
        return None
    return value.strip()


def _get_user_or_404(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User not found", code="USER_NOT_FOUND")
    return user


# --- own account --------------------------------------------------------

@users_bp.get("/profile")
@login_required
def get_profile():
    return jsonify(success=True, user=g.user.to_public()), 200


@users_bp.put("/profile")
@login_required
def update_profile():
    data = _json_body()
    errors = []

    full_name = None
    if "fullName" in data:
        full_name = _validate_full_name(data.get("fullName"), errors)
    if errors:
        raise ValidationFailed(errors)

    if full_name is not None:
        g.user.full_name = full_name
    db.session.commit()

    log_event("PROFILE_UPDATED", user_id=g.user.id)
    return jsonify(success=True, message="Profile updated", user=g.user.to_public()), 200


@users_bp.post("/change-password")
@login_required
def change_password():
    data = _json_body()
    current_password = data.get("currentPassword") or ""
    new_password = data.get("newPassword")

    errors = []
    if not isinstance(current_password, str) or not current_password:
        errors.append(field_error("currentPassword", "Current password is required"))
    valid, pw_errors = validate_password(new_password)
    if not valid:
        errors.extend(field_error("newPassword", m) for m in pw_errors)
    if errors:
        raise ValidationFailed(errors)

    if not verify_password(current_password, g.user.password_hash):
        log_event("PASSWORD_CHANGED", user_id=g.user.id, success=False,
                  error_message="Invalid current password")
        raise AuthenticationFailed("Current password is incorrect", code="INVALID_CURRENT_PASSWORD")

    if verify_password(new_password, g.user.password_hash):
        raise ValidationFailed(
            [field_error("newPassword", "New password must differ from the current one")]
        )

    g.user.password_hash = hash_password(new_password)
    g.user.password_changed_at = utcnow()
    db.session.commit()

    # other devices are signed out, the caller keeps its session
    current_session = getattr(g, "session", None)
    revoked = delete_other_sessions(g.user.id, current_session.id if current_session else None)

    sent, error = send_password_changed_email(g.user.email, g.user.full_name)
    if not sent:
        logger.info("password_changed_notification_skipped", user_id=g.user.id, reason=error)

    log_event("PASSWORD_CHANGED", user_id=g.user.id, metadata={"revoked_sessions": revoked})
    return jsonify(success=True, message="Password updated"), 200


# --- administration -----------------------------------------------------

@users_bp.get("/")
@require_roles("ADMIN")
def list_users():
    page, limit = _pagination()
    search = (request.args.get("search") or "").strip()
    role = (request.args.get("role") or "").strip().upper()

    q = User.query
    if search:
        pattern = f"%{search}%"
        q = q.filter(or_(User.email.ilike(pattern), User.full_name.ilike(pattern)))
    if role:
        q = q.join(User.role).filter(Role.name == role)

    total = q.count()
    rows = (
        q.order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return jsonify(
        success=True,
        users=[u.to_public() for u in rows],
        pagination=_page_meta(total, page, limit),
    ), 200


@users_bp.get("/<int:user_id>")
@require_roles("ADMIN")
def get_user(user_id: int):
    user = _get_user_or_404(user_id)
    active_sessions = Session.query.filter(
        Session.user_id == user.id, Session.expires_at > utcnow()
    ).count()
    return jsonify(success=True, user=user.to_public(), activeSessions=active_sessions), 200


@users_bp.put("/<int:user_id>")
@require_roles("ADMIN")
def update_user(user_id: int):
    user = _get_user_or_404(user_id)
    data = _json_body()
    errors = []

    role = None
    if "role" in data:
        role_name = data.get("role")
        role = Role.query.filter_by(name=role_name).first() if isinstance(role_name, str) else None
        if role is None:
            errors.append(field_error("role", "Unknown role"))
    for flag in ("isActive", "isVerified"):
        if flag in data and not isinstance(data[flag], bool):
            errors.append(field_error(flag, f"{flag} must be a boolean"))
    full_name = None
    if "fullName" in data:
        full_name = _validate_full_name(data.get("fullName"), errors)
    if errors:
        raise ValidationFailed(errors)

    if user.id == g.user.id and (data.get("isActive") is False or (role and role.name != "ADMIN")):
        raise ApiError("You cannot deactivate or demote your own account", code="SELF_MODIFICATION")

    changes = {}
    if role is not None and role.id != user.role_id:
        changes["role"] = [user.role_name, role.name]
        user.role = role
    if "isActive" in data and data["isActive"] != user.is_active:
        changes["isActive"] = [user.is_active, data["isActive"]]
        user.is_active = data["isActive"]
    if "isVerified" in data and data["isVerified"] != user.is_verified:
        changes["isVerified"] = [user.is_verified, data["isVerified"]]
        user.is_verified = data["isVerified"]
    if full_name is not None:
        user.full_name = full_name
    db.session.commit()

    if changes.get("isActive") == [True, False]:
        # forced logout
        delete_user_sessions(user.id)
        delete_user_refresh_tokens(user.id)

    log_event("USER_UPDATED", user_id=g.user.id, metadata={"target": user.id, "changes": changes})
    return jsonify(success=True, message="User updated", user=user.to_public()), 200


@users_bp.delete("/<int:user_id>")
@require_roles("ADMIN")
def delete_user(user_id: int):
    user = _get_user_or_404(user_id)
    if user.id == g.user.id:
        raise ApiError("You cannot delete your own account", code="SELF_DELETE")

    Session.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    RefreshToken.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    email = user.email
    db.session.delete(user)
    db.session.commit()

    log_event("USER_DELETED", user_id=g.user.id, metadata={"target": user_id, "email": email})
    return jsonify(success=True, message="User deleted"), 200


@users_bp.get("/roles")
@require_roles("ADMIN")
def list_roles():
    roles = Role.query.order_by(Role.id.asc()).all()
    return jsonify(
        success=True,
        roles=[{"id": r.id, "name": r.name, "description": r.description} for r in roles],
    ), 200


@users_bp.get("/audit-logs")
@require_roles("ADMIN")
def list_audit_logs():
    page, limit = _pagination()
    action = request.args.get("action")
    user_id = request.args.get("userId", type=int)

    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action.strip().upper())
    if user_id is not None:
        q = q.filter(AuditLog.user_id == user_id)

    total = q.count()
    rows = (
        q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    out = []
    for r in rows:
        out.append({
            "id": r.id,
            "userId": r.user_id,
            "action": r.action,
            "success": r.success,
            "errorMessage": r.error_message,
            "ip": r.ip,
            "userAgent": r.user_agent,
            "metadata": json.loads(r.metadata_json) if r.metadata_json else None,
            "timestamp": r.timestamp.isoformat() if r.timestamp else None,
        })

    return jsonify(success=True, logs=out, pagination=_page_meta(total, page, limit)), 200


@users_bp.post("/cleanup-sessions")
@require_roles("ADMIN")
def cleanup_sessions():
    sessions = purge_expired_sessions()
    refresh_tokens = purge_expired_refresh_tokens()
    logger.info("expired_sessions_purged", sessions=sessions, refresh_rows=refresh_tokens,
                profile=current_app.config.get("PROFILE_NAME"))
    log_event("SESSIONS_CLEANUP", user_id=g.user.id,
              metadata={"sessions": sessions, "refreshTokens": refresh_tokens})
    return jsonify(success=True, sessions=sessions, refreshTokens=refresh_tokens), 200
