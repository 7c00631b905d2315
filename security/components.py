import time
from dataclasses import dataclass
from typing import Callable

from security.csrf import CsrfTokenManager
from security.kv_store import KeyValueStore, build_store
from security.lockout import LockoutTracker
from security.login_guard import AccountLockoutGuard, CompositeLoginGuard, IpLockoutGuard
from security.rate_limit import FixedWindowRateLimiter
from security.tokens import TokenService


@dataclass
class SecurityComponents:
    store: KeyValueStore
    tokens: TokenService
    lockout: LockoutTracker
    csrf: CsrfTokenManager
    rate_limiter: FixedWindowRateLimiter
    login_guard: CompositeLoginGuard


def build_security(config, *, store: KeyValueStore = None,
                   clock: Callable[[], float] = time.time) -> SecurityComponents:
    if store is None:
        store = build_store(config.get("KV_STORE_URL"), clock=clock)

    lockout = LockoutTracker(
        store,
        threshold=config.get("IP_LOCKOUT_THRESHOLD", 5),
        schedule=config.get("IP_LOCKOUT_SCHEDULE_SECONDS", (60, 300, 900, 3600, 86400)),
        clock=clock,
    )
    guard = CompositeLoginGuard([
        IpLockoutGuard(lockout),
        AccountLockoutGuard(
            max_attempts=config.get("MAX_LOGIN_ATTEMPTS", 5),
            lockout_minutes=config.get("LOCKOUT_MINUTES", 15),
        ),
    ])
    return SecurityComponents(
        store=store,
        tokens=TokenService.from_config(config),
        lockout=lockout,
        csrf=CsrfTokenManager(
            store,
            expiry_seconds=config.get("CSRF_TOKEN_TTL_SECONDS", 1800),
            clock=clock,
        ),
        rate_limiter=FixedWindowRateLimiter(store, clock=clock),
        login_guard=guard,
    )


def init_security(app, **overrides) -> SecurityComponents:
    components = build_security(app.config, **overrides)
    app.extensions["security"] = components
    return components
