import math
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from security.kv_store import KeyValueStore
from utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 5
DEFAULT_SCHEDULE = (60, 5 * 60, 15 * 60, 60 * 60, 24 * 60 * 60)

RECORD_RETENTION_SECONDS = 24 * 60 * 60
SWEEP_INTERVAL_SECONDS = 30 * 60
SUSPICIOUS_WINDOW_SECONDS = 10 * 60
SUSPICIOUS_WINDOW_FAILURES = 10
SUSPICIOUS_FLAG_SECONDS = 24 * 60 * 60

BOT_USER_AGENT = re.compile(
    r"bot|crawl|spider|scrapy|curl|wget|python-requests|python-urllib|httpclient|"
    r"go-http-client|java/|libwww|okhttp|headless|phantomjs|selenium|sqlmap|nikto|hydra",
    re.IGNORECASE,
)

DISPOSABLE_DOMAINS = frozenset({
    "10minutemail.com",
    "guerrillamail.com",
    "mailinator.com",
    "tempmail.com",
    "temp-mail.org",
    "throwawaymail.com",
    "yopmail.com",
    "trashmail.com",
    "getnada.com",
    "sharklasers.com",
    "dispostable.com",
    "maildrop.cc",
})


def block_duration_for(count: int, threshold: int = DEFAULT_THRESHOLD,
                       schedule: Sequence[int] = DEFAULT_SCHEDULE) -> Optional[int]:
    """Seconds to block after ``count`` failures, or None below the threshold."""
    if count < threshold:
        return None
    excess = count - threshold + 1
    return schedule[min(excess, len(schedule) - 1)]


def is_disposable_email(identifier: Optional[str]) -> bool:
    if not identifier or "@" not in identifier:
        return False
    return identifier.rsplit("@", 1)[1].strip().lower() in DISPOSABLE_DOMAINS


def is_bot_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return True
    return bool(BOT_USER_AGENT.search(user_agent))


@dataclass
class BlockStatus:
    remaining_seconds: int
    attempt_count: int
    blocked_until: float


class LockoutTracker:
    """Per-(IP, identifier) failure counter with progressive blocking.

    Expired blocks are cleared lazily on lookup, so correctness never depends
    on the periodic sweep; the sweep only reclaims memory.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        schedule: Sequence[int] = DEFAULT_SCHEDULE,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.threshold = threshold
        self.schedule = tuple(schedule)
        self.clock = clock
        self._last_sweep = clock()

    @staticmethod
    def _key(ip: str, identifier: Optional[str]) -> str:
        return f"lockout:{ip or 'unknown'}|{(identifier or 'unknown').lower()}"

    def _ttl(self, blocked_until: Optional[float], now: float) -> int:
        ttl = RECORD_RETENTION_SECONDS
        if blocked_until:
            ttl = max(ttl, int(blocked_until - now) + 60)
        return ttl

    def get_record(self, ip: str, identifier: Optional[str]) -> Optional[dict]:
        return self.store.get(self._key(ip, identifier))

    def record_failure(self, ip: str, identifier: Optional[str]) -> dict:
        self.maybe_sweep()
        now = self.clock()
        key = self._key(ip, identifier)

        count = self.store.incr(f"{key}:count", ttl=RECORD_RETENTION_SECONDS)
        record = self.store.get(key) or {
            "count": 0,
            "firstAttempt": now,
            "blocked": False,
            "blockedUntil": None,
        }
        record["count"] = count
        record["lastAttempt"] = now

        self.store.incr(f"ipfail:{ip}", ttl=SUSPICIOUS_WINDOW_SECONDS)

        duration = block_duration_for(count, self.threshold, self.schedule)
        if duration is not None:
            record["blocked"] = True
            record["blockedUntil"] = now + duration
            self.store.set(f"suspicious:{ip}", True, ttl=SUSPICIOUS_FLAG_SECONDS)
            logger.warning(
                "ip_lockout_engaged",
                ip=ip,
                identifier=identifier,
                attempts=count,
                block_seconds=duration,
            )

        self.store.set(key, record, ttl=self._ttl(record.get("blockedUntil"), now))
        return record

    def is_blocked(self, ip: str, identifier: Optional[str]) -> Optional[BlockStatus]:
        key = self._key(ip, identifier)
        record = self.store.get(key)
        if not record or not record.get("blocked"):
            return None

        now = self.clock()
        blocked_until = record.get("blockedUntil") or 0
        if now > blocked_until:
            record["blocked"] = False
            record["blockedUntil"] = None
            self.store.set(key, record, ttl=RECORD_RETENTION_SECONDS)
            return None

        return BlockStatus(
            remaining_seconds=max(math.ceil(blocked_until - now), 1),
            attempt_count=int(record.get("count", 0)),
            blocked_until=blocked_until,
        )

    def reset(self, ip: str, identifier: Optional[str]) -> None:
        key = self._key(ip, identifier)
        self.store.delete(key)
        self.store.delete(f"{key}:count")

    def detect_suspicious(self, ip: str, user_agent: Optional[str], identifier: Optional[str]) -> bool:
        recent_failures = self.store.get(f"ipfail:{ip}") or 0
        return (
            int(recent_failures) > SUSPICIOUS_WINDOW_FAILURES
            or bool(self.store.get(f"suspicious:{ip}"))
            or is_bot_user_agent(user_agent)
            or is_disposable_email(identifier)
        )

    def maybe_sweep(self) -> int:
        if self.clock() - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return 0
        return self.sweep()

    def sweep(self) -> int:
        """Drop records whose last attempt is older than the retention window."""
        now = self.clock()
        self._last_sweep = now
        removed = 0
        for key in list(self.store.keys("lockout:")):
            if key.endswith(":count"):
                continue
            record = self.store.get(key)
            if not record:
                continue
            if record.get("blocked") and (record.get("blockedUntil") or 0) > now:
                continue
            if now - record.get("lastAttempt", now) > RECORD_RETENTION_SECONDS:
                self.store.delete(key)
                self.store.delete(f"{key}:count")
                removed += 1
        if removed:
            logger.info("lockout_sweep", removed=removed)
        return removed
