from functools import wraps

from flask import current_app, g, request

from models import db
from models.user import User
from security import get_security
from security.session import validate_session
from security.tokens import ACCESS_AUDIENCE, TokenExpiredError, TokenInvalidError
from utils.errors import AuthenticationFailed, Forbidden
from utils.logging_config import get_logger

logger = get_logger(__name__)


def _access_token_from_request():
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None
    return request.cookies.get(current_app.config.get("ACCESS_COOKIE_NAME", "token"))


def _reject(error):
    g.auth_error = error
    return None


def load_current_user():
    """
    Resolves the caller from the access token on every request.

    A signed, unexpired token is not enough: the account must still be
    active and a matching unexpired session row must exist. Failures are kept
    in ``g.auth_error`` and raised by ``login_required`` so public endpoints
    keep working with a stale cookie.
    """
    g.user = None
    g.session = None
    g.auth_error = None
    g.access_token = None

    token = _access_token_from_request()
    if not token:
        return None

    try:
        claims = get_security().tokens.verify(token, ACCESS_AUDIENCE)
    except TokenExpiredError:
        return _reject(AuthenticationFailed("Token expired", code="TOKEN_EXPIRED", expired=True))
    except TokenInvalidError:
        return _reject(AuthenticationFailed("Invalid token", code="TOKEN_INVALID"))

    try:
        user_id = int(claims.get("id"))
    except (TypeError, ValueError):
        return _reject(AuthenticationFailed("Invalid token", code="TOKEN_INVALID"))

    user = db.session.get(User, user_id)
    if user is None:
        return _reject(AuthenticationFailed("User not found", code="USER_NOT_FOUND"))
    if not user.is_active:
        return _reject(AuthenticationFailed("Account deactivated", code="ACCOUNT_DISABLED"))

    if not user.is_verified and request.path in current_app.config.get("SENSITIVE_PATHS", set()):
        return _reject(Forbidden(
            "Email verification required",
            code="EMAIL_NOT_VERIFIED",
            needsVerification=True,
        ))

    sess = validate_session(user.id, token)
    if sess is None:
        logger.warning("session_rejected", user_id=user.id, path=request.path)
        return _reject(AuthenticationFailed("Session expired or revoked", code="SESSION_REVOKED"))

    g.user = user
    g.session = sess
    g.access_token = token
    return None


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            error = getattr(g, "auth_error", None)
            raise error or AuthenticationFailed("Not authorized - token not provided", code="TOKEN_MISSING")
        return fn(*args, **kwargs)
    return wrapper
