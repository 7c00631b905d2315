import re
from datetime import timedelta
from enum import Enum

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from models import db
from models.user import User
from security import get_security
from security.csrf import set_csrf_cookie
from security.login_guard import LoginAttempt
from security.password import burn_password_check, hash_password, verify_password
from security.password_policy import validate_password
from security.rate_limit import check_login_rate, check_password_reset_rate
from security.session import (
    create_session,
    delete_refresh_token,
    delete_user_refresh_tokens,
    delete_user_sessions,
    find_refresh_token,
    limit_concurrent_sessions,
    rotate_session_token,
    session_lifetime_seconds,
    store_refresh_token,
)
from security.tokens import (
    REFRESH_AUDIENCE,
    TokenExpiredError,
    TokenInvalidError,
    hash_token,
    random_token,
)
from utils.audit import log_event
from utils.auth_context import login_required
from utils.clock import utcnow
from utils.emailer import (
    send_password_changed_email,
    send_password_reset_email,
    send_verification_email,
    send_welcome_email,
)
from utils.errors import (
    ApiError,
    AuthenticationFailed,
    Conflict,
    Forbidden,
    NotFound,
    ValidationFailed,
    field_error,
)
from utils.logging_config import get_logger
from utils.request_info import client_ip, user_agent
from utils.seed import default_role

logger = get_logger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FORGOT_PASSWORD_MESSAGE = "If the email exists, you will receive instructions to reset your password"
RESEND_VERIFICATION_MESSAGE = "If the account exists and is not verified, a new verification email has been sent"


class LoginStage(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    CHECKED_LOCKOUT = "CHECKED_LOCKOUT"
    CHECKED_CREDENTIALS = "CHECKED_CREDENTIALS"
    CHECKED_VERIFICATION = "CHECKED_VERIFICATION"
    ISSUED_TOKENS = "ISSUED_TOKENS"
    RECORDED_SESSION = "RECORDED_SESSION"
    RECORDED_AUDIT = "RECORDED_AUDIT"
    RESPONDED = "RESPONDED"


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _normalize_email(value) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def _is_valid_email(email: str) -> bool:
    return bool(email) and len(email) <= 254 and bool(_EMAIL_RE.match(email))


def _token_claims(user: User) -> dict:
    return {"id": user.id, "email": user.email, "role": user.role_name}


def _set_auth_cookie(resp, name: str, value: str, max_age: int):
    resp.set_cookie(
        name,
        value,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", True),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Strict"),
        max_age=max_age,
        path="/",
    )


def _clear_auth_cookies(resp):
    resp.delete_cookie(current_app.config.get("ACCESS_COOKIE_NAME", "token"), path="/")
    resp.delete_cookie(current_app.config.get("REFRESH_COOKIE_NAME", "refreshToken"), path="/")


def _audit_login_failure(user, reason, stage, **metadata):
    log_event(
        "LOGIN_FAILED",
        user_id=user.id if user else None,
        success=False,
        error_message=reason,
        metadata={"stage": stage.value, **metadata},
    )


@auth_bp.post("/register")
def register():
    data = _json_body()
    email = _normalize_email(data.get("email"))
    password = data.get("password")
    full_name = data.get("fullName")

    errors = []
    if not _is_valid_email(email):
        errors.append(field_error("email", "Invalid email"))
    valid, pw_errors = validate_password(password)
    if not valid:
        errors.extend(field_error("password", m) for m in pw_errors)
    if full_name is not None and (
        not isinstance(full_name, str) or not 2 <= len(full_name.strip()) <= 120
    ):
        errors.append(field_error("fullName", "Name must be between 2 and 120 characters"))
    if errors:
        raise ValidationFailed(errors)

    if User.query.filter_by(email=email).first():
        log_event("REGISTER", success=False, error_message="Email already registered")
        raise Conflict("Email already registered")

    role = default_role()
    if role is None:
        logger.error("default_role_missing", hint="run flask seed-roles")
        raise ApiError("Registration is unavailable", status_code=500, code="CONFIGURATION_ERROR")

    verification_token = random_token(32)
    user = User(
        email=email,
        password_hash=hash_password(password),
        full_name=full_name.strip() if full_name else None,
        is_active=True,
        is_verified=False,
        verification_token_hash=hash_token(verification_token),
        role=role,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Email already registered") from None

    # the account exists either way; a mail failure is only logged
    send_verification_email(email, verification_token)
    log_event("REGISTER", user_id=user.id)

    return jsonify(
        success=True,
        message="Registered successfully. Please verify your email.",
    ), 201


@auth_bp.post("/login")
def login():
    check_login_rate()

    data = _json_body()
    raw_email = data.get("email")
    password = data.get("password")
    remember_me = data.get("rememberMe", False)

    errors = []
    if not isinstance(raw_email, str) or not raw_email.strip():
        errors.append(field_error("email", "Email is required"))
    elif len(raw_email) > 254:
        errors.append(field_error("email", "Email is too long"))
    if not isinstance(password, str) or not password:
        errors.append(field_error("password", "Password is required"))
    elif len(password) > 128:
        errors.append(field_error("password", "Password is too long"))
    if not isinstance(remember_me, bool):
        errors.append(field_error("rememberMe", "rememberMe must be a boolean"))
    if errors:
        raise ValidationFailed(errors)

    email = _normalize_email(raw_email)
    security = get_security()
    ip = client_ip()
    agent = user_agent()

    suspicious = security.lockout.detect_suspicious(ip, agent, email)
    if suspicious:
        logger.warning("suspicious_login_attempt", ip=ip, identifier=email)

    user = User.query.filter_by(email=email).first()
    attempt = LoginAttempt(ip=ip, identifier=email, user_agent=agent, user=user)

    try:
        security.login_guard.check(attempt)
    except ApiError as exc:
        _audit_login_failure(user, exc.message, LoginStage.CHECKED_LOCKOUT,
                             code=exc.code, suspicious=suspicious)
        raise

    if user is None or not verify_password(password, user.password_hash):
        if user is None:
            burn_password_check(password)
        locked_now = security.login_guard.record_failure(attempt)
        _audit_login_failure(
            user,
            "User not found" if user is None else "Wrong password",
            LoginStage.CHECKED_CREDENTIALS,
            suspicious=suspicious,
            lockEngaged=locked_now,
        )
        raise AuthenticationFailed("Invalid credentials", code="INVALID_CREDENTIALS")

    if not user.is_active:
        _audit_login_failure(user, "Account deactivated", LoginStage.CHECKED_CREDENTIALS)
        raise Forbidden(
            "Your account has been deactivated. Contact the administrator.",
            code="ACCOUNT_DISABLED",
        )

    if not user.is_verified:
        _audit_login_failure(user, "Email not verified", LoginStage.CHECKED_VERIFICATION)
        raise Forbidden(
            "Your account is not verified. Check your email or request a new verification email.",
            code="EMAIL_NOT_VERIFIED",
            needsVerification=True,
            email=user.email,
        )

    security.login_guard.record_success(attempt)

    access_token = security.tokens.issue_access(_token_claims(user))
    refresh_token = security.tokens.issue_refresh({"id": user.id})
    store_refresh_token(user.id, refresh_token)

    user.last_login_at = utcnow()
    db.session.commit()

    create_session(user.id, access_token, refresh_token, remember_me)
    limit_concurrent_sessions(user.id, current_app.config.get("MAX_CONCURRENT_SESSIONS", 5))

    log_event("LOGIN_SUCCESS", user_id=user.id,
              metadata={"rememberMe": remember_me, "suspicious": suspicious})

    resp = jsonify(
        success=True,
        message="Login successful",
        token=access_token,
        user=user.to_public(),
    )
    max_age = session_lifetime_seconds(remember_me)
    _set_auth_cookie(resp, current_app.config.get("ACCESS_COOKIE_NAME", "token"), access_token, max_age)
    _set_auth_cookie(resp, current_app.config.get("REFRESH_COOKIE_NAME", "refreshToken"), refresh_token, max_age)
    return resp, 200


@auth_bp.post("/refresh-token")
def refresh_token():
    token = request.cookies.get(current_app.config.get("REFRESH_COOKIE_NAME", "refreshToken"))
    if not token:
        token = _json_body().get("refreshToken")
    if not token or not isinstance(token, str):
        raise AuthenticationFailed("Refresh token not provided", code="REFRESH_TOKEN_MISSING")

    security = get_security()
    try:
        claims = security.tokens.verify(token, REFRESH_AUDIENCE)
    except TokenExpiredError:
        raise AuthenticationFailed("Refresh token expired", code="REFRESH_TOKEN_EXPIRED", expired=True) from None
    except TokenInvalidError:
        raise AuthenticationFailed("Invalid refresh token", code="REFRESH_TOKEN_INVALID") from None

    # a token removed by logout is refused even while its signature is valid
    row = find_refresh_token(token)
    if row is None:
        raise AuthenticationFailed("Refresh token not found or expired", code="REFRESH_TOKEN_REVOKED")

    user = db.session.get(User, row.user_id)
    if user is None or not user.is_active or str(user.id) != str(claims.get("id")):
        raise AuthenticationFailed("User not found or inactive", code="ACCOUNT_DISABLED")

    access_token = security.tokens.issue_access(_token_claims(user))
    sess = rotate_session_token(user.id, token, access_token)
    if sess is None:
        raise AuthenticationFailed("Session expired or revoked", code="SESSION_REVOKED")

    resp = jsonify(success=True, token=access_token)
    remaining = int((sess.expires_at - utcnow()).total_seconds())
    _set_auth_cookie(resp, current_app.config.get("ACCESS_COOKIE_NAME", "token"), access_token, max(remaining, 1))
    return resp, 200


@auth_bp.post("/logout")
def logout():
    token = request.cookies.get(current_app.config.get("REFRESH_COOKIE_NAME", "refreshToken"))
    if not token:
        token = _json_body().get("refreshToken")
    if token and isinstance(token, str):
        delete_refresh_token(token)

    user = getattr(g, "user", None)
    if user is not None:
        removed = delete_user_sessions(user.id)
        log_event("LOGOUT", user_id=user.id, metadata={"sessions_removed": removed})

    resp = jsonify(success=True, message="Logged out")
    _clear_auth_cookies(resp)
    return resp, 200


@auth_bp.post("/forgot-password")
def forgot_password():
    check_password_reset_rate()

    email = _normalize_email(_json_body().get("email"))
    if not _is_valid_email(email):
        raise ValidationFailed([field_error("email", "Invalid email")], message="Invalid email")

    # same answer whether or not the account exists
    user = User.query.filter_by(email=email).first()
    if user is not None:
        reset_token = random_token(32)
        user.reset_token_hash = hash_token(reset_token)
        user.reset_token_expires = utcnow() + timedelta(
            minutes=current_app.config.get("RESET_TOKEN_TTL_MINUTES", 60)
        )
        db.session.commit()

        send_password_reset_email(user.email, reset_token)
        log_event("PASSWORD_RESET_REQUEST", user_id=user.id)

    return jsonify(success=True, message=FORGOT_PASSWORD_MESSAGE), 200


@auth_bp.post("/reset-password")
def reset_password():
    data = _json_body()
    token = data.get("token")
    password = data.get("password")

    errors = []
    if not isinstance(token, str) or len(token) < 32:
        errors.append(field_error("token", "Invalid token"))
    valid, pw_errors = validate_password(password)
    if not valid:
        errors.extend(field_error("password", m) for m in pw_errors)
    if errors:
        raise ValidationFailed(errors, message="Invalid data")

    token_hash = hash_token(token)
    candidate = User.query.filter_by(reset_token_hash=token_hash).first()
    if candidate is None:
        raise NotFound("Invalid or expired reset token", code="RESET_TOKEN_INVALID")

    now = utcnow()
    # token match and expiry are checked in the same statement that writes
    result = db.session.execute(
        update(User)
        .where(User.reset_token_hash == token_hash, User.reset_token_expires > now)
        .values(
            password_hash=hash_password(password),
            reset_token_hash=None,
            reset_token_expires=None,
            failed_login_attempts=0,
            locked_until=None,
            password_changed_at=now,
        )
    )
    db.session.commit()
    if result.rowcount != 1:
        raise NotFound("Invalid or expired reset token", code="RESET_TOKEN_INVALID")

    db.session.refresh(candidate)
    delete_user_sessions(candidate.id)
    delete_user_refresh_tokens(candidate.id)

    sent, error = send_password_changed_email(candidate.email, candidate.full_name)
    if not sent:
        logger.info("password_changed_notification_skipped", user_id=candidate.id, reason=error)
    log_event("PASSWORD_RESET_SUCCESS", user_id=candidate.id)

    return jsonify(success=True, message="Password updated successfully"), 200


@auth_bp.get("/verify-email/<token>")
def verify_email(token):
    token_hash = hash_token(token)
    user = User.query.filter_by(verification_token_hash=token_hash).first()
    if user is None:
        raise NotFound("Invalid or already used verification token", code="VERIFICATION_TOKEN_INVALID")
    if user.is_verified:
        raise ApiError("Email already verified", code="ALREADY_VERIFIED")

    updated = db.session.execute(
        update(User)
        .where(
            User.id == user.id,
            User.verification_token_hash == token_hash,
            User.is_verified.is_(False),
        )
        .values(is_verified=True, verification_token_hash=None)
    ).rowcount
    db.session.commit()
    if not updated:
        raise ApiError("Email already verified", code="ALREADY_VERIFIED")

    db.session.refresh(user)
    send_welcome_email(user.email, user.full_name)
    log_event("EMAIL_VERIFIED", user_id=user.id)

    return jsonify(success=True, message="Email verified successfully"), 200


@auth_bp.post("/resend-verification")
def resend_verification():
    check_password_reset_rate()

    email = _normalize_email(_json_body().get("email"))
    if not _is_valid_email(email):
        raise ValidationFailed([field_error("email", "Invalid email")], message="Invalid email")

    user = User.query.filter_by(email=email).first()
    if user is not None and not user.is_verified:
        verification_token = random_token(32)
        user.verification_token_hash = hash_token(verification_token)
        db.session.commit()
        send_verification_email(user.email, verification_token)
        log_event("VERIFICATION_RESENT", user_id=user.id)

    return jsonify(success=True, message=RESEND_VERIFICATION_MESSAGE), 200


@auth_bp.get("/validate")
@login_required
def validate_token():
    return jsonify(success=True, message="Token valid", user=g.user.to_public()), 200


@auth_bp.get("/csrf-token")
def csrf_token():
    user = getattr(g, "user", None)
    token = get_security().csrf.issue(user.id if user is not None else None)

    resp = jsonify(
        success=True,
        csrfToken=token,
        expiresIn=current_app.config.get("CSRF_TOKEN_TTL_SECONDS", 1800),
    )
    set_csrf_cookie(resp, token)
    return resp, 200
