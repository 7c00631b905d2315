"""Login guards: independent brute-force defences composed behind one interface.

``IpLockoutGuard`` is keyed by (client IP, submitted identifier) and lives in
the key-value store. ``AccountLockoutGuard`` is keyed by the account and lives
in the users table. Both run on every login; neither knows about the other.
"""
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol, Sequence

from sqlalchemy import update

from models import db
from models.user import User
from security.lockout import LockoutTracker
from utils.clock import utcnow
from utils.errors import AccountLocked, RateLimited
from utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class LoginAttempt:
    ip: str
    identifier: Optional[str]
    user_agent: str = ""
    user: Optional[User] = None


class LoginGuard(Protocol):
    def check(self, attempt: LoginAttempt) -> None:
        """Raise an ApiError when the attempt must be refused."""

    def record_failure(self, attempt: LoginAttempt) -> bool:
        """Count a failed attempt; returns True when it engaged a lock."""

    def record_success(self, attempt: LoginAttempt) -> None: ...


class IpLockoutGuard:
    def __init__(self, tracker: LockoutTracker):
        self.tracker = tracker

    def check(self, attempt: LoginAttempt) -> None:
        status = self.tracker.is_blocked(attempt.ip, attempt.identifier)
        if status is None:
            return
        minutes = math.ceil(status.remaining_seconds / 60)
        raise RateLimited(
            f"Too many failed attempts. Try again in {minutes} minute(s).",
            retry_after=status.remaining_seconds,
            code="TOO_MANY_ATTEMPTS",
            remainingTime=status.remaining_seconds,
            attemptCount=status.attempt_count,
        )

    def record_failure(self, attempt: LoginAttempt) -> bool:
        record = self.tracker.record_failure(attempt.ip, attempt.identifier)
        return bool(record.get("blocked"))

    def record_success(self, attempt: LoginAttempt) -> None:
        self.tracker.reset(attempt.ip, attempt.identifier)


class AccountLockoutGuard:
    """Persisted per-account counter.

    The counter is incremented with a single ``UPDATE ... SET n = n + 1`` and
    the lock is set by a conditional update, so concurrent failures cannot
    under-count.
    """

    def __init__(self, max_attempts: int = 5, lockout_minutes: int = 15):
        self.max_attempts = max_attempts
        self.lockout_minutes = lockout_minutes

    def check(self, attempt: LoginAttempt) -> None:
        user = attempt.user
        if user is None or not user.locked_until:
            return

        now = utcnow()
        if user.locked_until > now:
            remaining = (user.locked_until - now).total_seconds()
            minutes = max(math.ceil(remaining / 60), 1)
            raise AccountLocked(
                f"Account temporarily locked. Try again in {minutes} minute(s).",
                remainingMinutes=minutes,
                remainingTime=max(int(remaining), 1),
            )

        # lock expired: start counting again from zero
        db.session.execute(
            update(User)
            .where(User.id == user.id, User.locked_until <= now)
            .values(failed_login_attempts=0, locked_until=None)
        )
        db.session.commit()
        db.session.refresh(user)

    def record_failure(self, attempt: LoginAttempt) -> bool:
        user = attempt.user
        if user is None:
            return False

        now = utcnow()
        db.session.execute(
            update(User)
            .where(User.id == user.id)
            .values(failed_login_attempts=User.failed_login_attempts + 1)
        )
        locked = db.session.execute(
            update(User)
            .where(User.id == user.id, User.failed_login_attempts >= self.max_attempts)
            .values(locked_until=now + timedelta(minutes=self.lockout_minutes))
        ).rowcount
        db.session.commit()
        db.session.refresh(user)

        if locked:
            logger.warning(
                "account_lockout_engaged",
                user_id=user.id,
                attempts=user.failed_login_attempts,
                lockout_minutes=self.lockout_minutes,
            )
        return bool(locked)

    def record_success(self, attempt: LoginAttempt) -> None:
        user = attempt.user
        if user is None:
            return
        db.session.execute(
            update(User)
            .where(User.id == user.id)
            .values(failed_login_attempts=0, locked_until=None)
        )
        db.session.commit()
        db.session.refresh(user)


class CompositeLoginGuard:
    def __init__(self, guards: Sequence[LoginGuard]):
        self.guards = list(guards)

    def check(self, attempt: LoginAttempt) -> None:
        for guard in self.guards:
            guard.check(attempt)

    def record_failure(self, attempt: LoginAttempt) -> bool:
        engaged = False
        for guard in self.guards:
            engaged = guard.record_failure(attempt) or engaged
        return engaged

    def record_success(self, attempt: LoginAttempt) -> None:
        for guard in self.guards:
            guard.record_success(attempt)
