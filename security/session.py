from datetime import timedelta
from typing import Optional

from flask import current_app

from models import db
from models.refresh_token import RefreshToken
from models.session import Session
from security.tokens import hash_token, secure_compare
from utils.clock import utcnow
from utils.logging_config import get_logger
from utils.request_info import client_ip, user_agent

logger = get_logger(__name__)


def session_lifetime_seconds(persistent: bool) -> int:
    if persistent:
        return current_app.config.get("PERSISTENT_SESSION_SECONDS", 30 * 24 * 60 * 60)
    return current_app.config.get("EPHEMERAL_SESSION_SECONDS", 24 * 60 * 60)


def create_session(user_id: int, access_token: str, refresh_token: Optional[str], persistent: bool) -> Session:
    """
    Records the server-side session backing an access token.
    Only hashes of the tokens are stored.
    """
    now = utcnow()
    row = Session(
        user_id=user_id,
        token_hash=hash_token(access_token),
        refresh_token_hash=hash_token(refresh_token) if refresh_token else None,
        persistent=bool(persistent),
        created_at=now,
        last_seen_at=now,
        expires_at=now + timedelta(seconds=session_lifetime_seconds(persistent)),
        ip=client_ip(),
        user_agent=user_agent()[:255] or None,
    )
    db.session.add(row)
    db.session.commit()
    return row


def limit_concurrent_sessions(user_id: int, max_sessions: int = 5) -> int:
    """Deletes the least recently active sessions beyond ``max_sessions``."""
    now = utcnow()
    active = (
        Session.query
        .filter(Session.user_id == user_id, Session.expires_at > now)
        .order_by(Session.last_seen_at.desc(), Session.created_at.desc(), Session.id.desc())
        .all()
    )
    surplus = active[max_sessions:]
    for row in surplus:
        db.session.delete(row)
    if surplus:
        db.session.commit()
        logger.info("sessions_trimmed", user_id=user_id, removed=len(surplus))
    return len(surplus)


def validate_session(user_id: int, access_token: str) -> Optional[Session]:
    """
    A signed access token is only honoured while its session row exists and
    has not expired; deleting the row revokes the token.
    """
    token_hash = hash_token(access_token)
    now = utcnow()

    sess = Session.query.filter_by(token_hash=token_hash).first()
    if not sess or sess.user_id != user_id:
        return None
    if not secure_compare(sess.token_hash, token_hash):
        return None
    if sess.expires_at <= now:
        return None

    # Update activity timestamp (touch)
    sess.last_seen_at = now
    db.session.commit()
    return sess


def rotate_session_token(user_id: int, refresh_token: str, new_access_token: str) -> Optional[Session]:
    """Moves the session opened with ``refresh_token`` onto a new access token."""
    now = utcnow()
    sess = (
        Session.query
        .filter_by(user_id=user_id, refresh_token_hash=hash_token(refresh_token))
        .filter(Session.expires_at > now)
        .first()
    )
    if not sess:
        return None
    sess.token_hash = hash_token(new_access_token)
    sess.last_seen_at = now
    db.session.commit()
    return sess


def delete_user_sessions(user_id: int) -> int:
    count = Session.query.filter_by(user_id=user_id).delete(synchronize_session=False)
    db.session.commit()
    return count


def delete_other_sessions(user_id: int, keep_session_id: Optional[int]) -> int:
    q = Session.query.filter(Session.user_id == user_id)
    if keep_session_id is not None:
        q = q.filter(Session.id != keep_session_id)
    count = q.delete(synchronize_session=False)
    db.session.commit()
    return count


def purge_expired_sessions() -> int:
    count = Session.query.filter(Session.expires_at <= utcnow()).delete(synchronize_session=False)
    db.session.commit()
    return count


# --- refresh token store -------------------------------------------------

def store_refresh_token(user_id: int, refresh_token: str) -> RefreshToken:
    days = current_app.config.get("REFRESH_TOKEN_STORE_DAYS", 7)
    row = RefreshToken(
        user_id=user_id,
        token_hash=hash_token(refresh_token),
        expires_at=utcnow() + timedelta(days=days),
    )
    db.session.add(row)
    db.session.commit()
    return row


def find_refresh_token(refresh_token: str) -> Optional[RefreshToken]:
    token_hash = hash_token(refresh_token)
    row = (
        RefreshToken.query
        .filter_by(token_hash=token_hash)
        .filter(RefreshToken.expires_at > utcnow())
        .first()
    )
    if row and secure_compare(row.token_hash, token_hash):
        return row
    return None


def delete_refresh_token(refresh_token: str) -> int:
    count = (
        RefreshToken.query
        .filter_by(token_hash=hash_token(refresh_token))
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return count


def delete_user_refresh_tokens(user_id: int) -> int:
    count = RefreshToken.query.filter_by(user_id=user_id).delete(synchronize_session=False)
    db.session.commit()
    return count


def purge_expired_refresh_tokens() -> int:
    count = RefreshToken.query.filter(RefreshToken.expires_at <= utcnow()).delete(synchronize_session=False)
    db.session.commit()
    return count
