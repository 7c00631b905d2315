import time
from typing import Callable

from flask import current_app, request

from security import get_security
from security.kv_store import KeyValueStore
from utils.errors import RateLimited
from utils.logging_config import get_logger
from utils.request_info import client_ip

logger = get_logger(__name__)


class FixedWindowRateLimiter:
    """Simple fixed window per (scope, client) on the shared key-value store."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def hit(self, scope: str, client: str, *, window_seconds: int, max_requests: int) -> tuple[bool, int]:
        """
        Counts one request. Returns (allowed, retry_after_seconds).
        """
        now = self.clock()
        window_index = int(now // window_seconds)
        window_end = (window_index + 1) * window_seconds

        key = f"rate:{scope}:{client or 'unknown'}:{window_index}"
        count = self.store.incr(key, ttl=window_seconds)

        if count > max_requests:
            retry_after = int(window_end - now)
            return False, max(retry_after, 1)

        return True, 0


def _enforce(scope: str, window_key: str, max_key: str, default_window: int, default_max: int, message: str):
    if not current_app.config.get("RATE_LIMIT_ENABLED", True):
        return

    ip = client_ip()
    allowed, retry_after = get_security().rate_limiter.hit(
        scope,
        ip,
        window_seconds=current_app.config.get(window_key, default_window),
        max_requests=current_app.config.get(max_key, default_max),
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", scope=scope, ip=ip, retry_after=retry_after)
        raise RateLimited(message, retry_after=retry_after)


def enforce_general_rate_limit():
    """before_request hook for every route."""
    if request.path == "/health":
        return None
    _enforce(
        "general",
        "RATE_LIMIT_WINDOW_SECONDS",
        "RATE_LIMIT_MAX_REQUESTS",
        900,
        100,
        "Too many requests, please try again later.",
    )
    return None


def check_login_rate():
    _enforce(
        "login",
        "LOGIN_RATE_WINDOW_SECONDS",
        "LOGIN_RATE_MAX_REQUESTS",
        900,
        50,
        "Too many login requests. Slow down.",
    )


def check_password_reset_rate():
    _enforce(
        "password_reset",
        "PASSWORD_RESET_RATE_WINDOW_SECONDS",
        "PASSWORD_RESET_RATE_MAX_REQUESTS",
        900,
        3,
        "Too many recovery requests, please try again later.",
    )
