"""Key-value capability backing lockout, rate-limit and CSRF state.

Two implementations share one small interface: a process-local store for a
single worker (and tests), and a Redis store so that blocks, counters and
one-time CSRF tokens survive restarts and are shared between instances.
Values are JSON-serialisable objects.
"""
import json
import threading
import time
from typing import Any, Callable, Iterator, Optional, Protocol

import redis

from utils.logging_config import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool: ...

    def delete(self, key: str) -> None: ...

    def incr(self, key: str, ttl: Optional[int] = None) -> int: ...

    def keys(self, prefix: str) -> Iterator[str]: ...


def _copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


class MemoryKeyValueStore:
    """Thread-safe dict with lazy TTL expiry.

    Expired keys are invisible immediately. Their memory is reclaimed by
    ``sweep()``, which writes also trigger at most once per ``sweep_interval``.
    Values are copied in and out, as they would be through Redis.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: int = 5 * 60):
        self._clock = clock
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def _live(self, key: str):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _sweep_locked(self) -> int:
        now = self._clock()
        self._last_sweep = now
        expired = [
            k for k, (_, expires_at) in self._data.items()
            if expires_at is not None and expires_at <= now
        ]
        for k in expired:
            del self._data[k]
        return len(expired)

    def _maybe_sweep_locked(self) -> None:
        if self._clock() - self._last_sweep >= self.sweep_interval:
            self._sweep_locked()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live(key)
            return _copy(entry[0]) if entry else None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._maybe_sweep_locked()
            self._data[key] = (_copy(value), self._expiry(ttl))

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        with self._lock:
            self._maybe_sweep_locked()
            if self._live(key) is not None:
                return False
            self._data[key] = (_copy(value), self._expiry(ttl))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        with self._lock:
            self._maybe_sweep_locked()
            entry = self._live(key)
            if entry is None:
                count, expires_at = 1, self._expiry(ttl)
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._data[key] = (count, expires_at)
            return count

    def keys(self, prefix: str) -> Iterator[str]:
        with self._lock:
            names = [k for k in self._data if k.startswith(prefix)]
        for name in names:
            if self.get(name) is not None:
                yield name

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked()


class RedisKeyValueStore:
    """Redis-backed store; TTLs are enforced by Redis itself."""

    def __init__(self, client: "redis.Redis", namespace: str = "backoffice:"):
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 5.0, namespace: str = "backoffice:"):
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=socket_timeout)
        return cls(client, namespace=namespace)

    def _k(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(self._k(key))
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.client.set(self._k(key), json.dumps(value), ex=ttl or None)

    def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return bool(self.client.set(self._k(key), json.dumps(value), ex=ttl or None, nx=True))

    def delete(self, key: str) -> None:
        self.client.delete(self._k(key))

    def incr(self, key: str, ttl: Optional[int] = None) -> int:
        name = self._k(key)
        pipe = self.client.pipeline()
        if ttl:
            # only the first increment of a window creates the key and its expiry
            pipe.set(name, 0, ex=int(ttl), nx=True)
        pipe.incr(name)
        result = pipe.execute()
        return int(result[-1])

    def keys(self, prefix: str) -> Iterator[str]:
        offset = len(self.namespace)
        for name in self.client.scan_iter(match=f"{self._k(prefix)}*"):
            yield name[offset:]

    def sweep(self) -> int:
        return 0

    def ping(self) -> bool:
        return bool(self.client.ping())


def build_store(url: Optional[str], *, clock: Callable[[], float] = time.time) -> KeyValueStore:
    if not url:
        logger.info("kv_store_selected", backend="memory")
        return MemoryKeyValueStore(clock=clock)
    logger.info("kv_store_selected", backend="redis")
    return RedisKeyValueStore.from_url(url)
