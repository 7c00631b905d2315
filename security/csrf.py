import secrets
import time
from typing import Callable, Optional

from flask import current_app, g, request

from security import get_security
from security.kv_store import KeyValueStore
from utils.errors import CsrfFailed
from utils.logging_config import get_logger

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
CSRF_BODY_FIELD = "csrfToken"
STATE_CHANGING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

SWEEP_INTERVAL_SECONDS = 10 * 60


class CsrfTokenManager:
    """One-time CSRF tokens.

    A token validates exactly once. After a successful validation the entry is
    kept, marked used, for a short grace window so that a duplicate
    near-simultaneous submission is rejected as "used" rather than "unknown".
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        expiry_seconds: int = 30 * 60,
        grace_seconds: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.expiry_seconds = expiry_seconds
        self.grace_seconds = grace_seconds
        self.clock = clock
        self._last_sweep = clock()

    @staticmethod
    def _key(token: str) -> str:
        return f"csrf:{token}"

    @staticmethod
    def _claim_key(token: str) -> str:
        return f"csrfclaim:{token}"

    def issue(self, owner_id: Optional[int] = None) -> str:
        self.maybe_sweep()
        token = secrets.token_hex(32)
        self.store.set(
            self._key(token),
            {"createdAt": self.clock(), "ownerId": owner_id, "used": False},
            ttl=self.expiry_seconds,
        )
        return token

    def validate(self, token: Optional[str], owner_id: Optional[int] = None) -> bool:
        if not token or not isinstance(token, str):
            return False

        key = self._key(token)
        entry = self.store.get(key)
        if not entry:
            return False

        if self.clock() - entry["createdAt"] > self.expiry_seconds:
            self.store.delete(key)
            return False

        if entry.get("used"):
            return False

        stored_owner = entry.get("ownerId")
        if owner_id is not None and stored_owner is not None and stored_owner != owner_id:
            return False

        # only one concurrent caller wins the claim, whichever instance it runs on
        if not self.store.set_if_absent(self._claim_key(token), 1, ttl=self.expiry_seconds):
            return False

        entry["used"] = True
        self.store.set(key, entry, ttl=self.grace_seconds)
        return True

    def maybe_sweep(self) -> int:
        if self.clock() - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return 0
        return self.sweep()

    def sweep(self) -> int:
        now = self.clock()
        self._last_sweep = now
        removed = 0
        for key in list(self.store.keys("csrf:")):
            entry = self.store.get(key)
            if entry and now - entry.get("createdAt", now) > self.expiry_seconds:
                self.store.delete(key)
                removed += 1
        return removed


def _request_token() -> Optional[str]:
    token = request.headers.get(CSRF_HEADER)
    if token:
        return token
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        value = data.get(CSRF_BODY_FIELD)
        if isinstance(value, str):
            return value
    return None


def set_csrf_cookie(resp, token: str):
    resp.set_cookie(
        current_app.config.get("CSRF_COOKIE_NAME", "csrf-token"),
        token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", True),
        samesite=current_app.config.get("CSRF_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("CSRF_TOKEN_TTL_SECONDS", 1800),
        path="/",
    )
    return resp


def require_csrf():
    """before_request hook: one-time token on every state-changing request."""
    if not current_app.config.get("CSRF_ENABLED", True):
        return None
    if request.method not in STATE_CHANGING_METHODS:
        return None
    if request.path in current_app.config.get("CSRF_EXEMPT_PATHS", set()):
        return None

    token = _request_token()
    if not token:
        logger.warning("csrf_token_missing", path=request.path)
        raise CsrfFailed("CSRF token required", code="CSRF_TOKEN_MISSING")

    user = getattr(g, "user", None)
    owner_id = user.id if user is not None else None
    if not get_security().csrf.validate(token, owner_id):
        logger.warning("csrf_token_rejected", path=request.path, user_id=owner_id)
        raise CsrfFailed("Invalid or expired CSRF token", code="CSRF_TOKEN_INVALID")
    return None
