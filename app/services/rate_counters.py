"""Fixed-window counters for the voucher security gate.

Redis-backed when ``REDIS_URL`` answers a ping, in-process otherwise. The
counters are best-effort; the ``flagged_ips`` table is the authority for
blocking.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from threading import Lock

import redis

from app.config import settings

logger = logging.getLogger(__name__)


class CounterStore(ABC):
    @abstractmethod
    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Count one event and return (count in window, seconds until the window resets)."""

    @abstractmethod
    def get(self, key: str) -> int:
        """Current count for ``key`` (0 when the window has lapsed)."""

    @abstractmethod
    def lock(self, key: str, seconds: int) -> None:
        """Mark ``key`` as locked for ``seconds``."""

    @abstractmethod
    def locked_for(self, key: str) -> int:
        """Remaining lock seconds for ``key`` (0 when unlocked)."""

    @abstractmethod
    def reset(self, key: str) -> None:
        pass


class InMemoryCounterStore(CounterStore):
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}
        self._locks: dict[str, float] = {}
        self._mutex = Lock()

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = self._clock()
        with self._mutex:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
        return count, max(1, int(reset_at - now + 0.999))

    def get(self, key: str) -> int:
        with self._mutex:
            count, reset_at = self._windows.get(key, (0, 0.0))
        return count if self._clock() < reset_at else 0

    def lock(self, key: str, seconds: int) -> None:
        with self._mutex:
            self._locks[key] = self._clock() + seconds

    def locked_for(self, key: str) -> int:
        with self._mutex:
            until = self._locks.get(key)
            if until is None:
                return 0
            remaining = until - self._clock()
            if remaining <= 0:
                self._locks.pop(key, None)
                return 0
        return max(1, int(remaining + 0.999))

    def reset(self, key: str) -> None:
        with self._mutex:
            self._windows.pop(key, None)
            self._locks.pop(key, None)

    def clear(self) -> None:
        with self._mutex:
            self._windows.clear()
            self._locks.clear()


class RedisCounterStore(CounterStore):
    def __init__(self, client: redis.Redis, prefix: str = "voucher_gate"):
        self._client = client
        self._prefix = prefix

    def _key(self, kind: str, key: str) -> str:
        return f"{self._prefix}:{kind}:{key}"

    def hit(self, key: str, window_seconds: int) -> tuple[int, int]:
        name = self._key("win", key)
        pipe = self._client.pipeline()
        pipe.incr(name)
        pipe.ttl(name)
        count, ttl = pipe.execute()
        if ttl is None or int(ttl) < 0:
            # First hit opens the window; the expiry is never extended afterwards.
            self._client.expire(name, window_seconds)
            ttl = window_seconds
        return int(count), max(1, int(ttl))

    def get(self, key: str) -> int:
        raw = self._client.get(self._key("win", key))
        return int(raw) if raw else 0

    def lock(self, key: str, seconds: int) -> None:
        self._client.setex(self._key("lock", key), max(1, int(seconds)), "1")

    def locked_for(self, key: str) -> int:
        ttl = self._client.ttl(self._key("lock", key))
        return int(ttl) if ttl and int(ttl) > 0 else 0

    def reset(self, key: str) -> None:
        self._client.delete(self._key("win", key), self._key("lock", key))


_STORE: CounterStore | None = None


def get_counter_store() -> CounterStore:
    """Shared store for this process, chosen on first use."""
    global _STORE
    if _STORE is not None:
        return _STORE
    if settings.redis_url:
        try:
            client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
            client.ping()
            _STORE = RedisCounterStore(client)
            return _STORE
        except redis.RedisError as exc:
            logger.warning("Gate Redis unavailable, using in-memory counters: %s", exc)
    _STORE = InMemoryCounterStore()
    return _STORE


def set_counter_store(store: CounterStore | None) -> None:
    global _STORE
    _STORE = store
