"""Counter store backends for the rate limiter.

A counter store keeps ``RateLimitEntry`` values by key and applies the
fixed-window step (start, increment or reject) to one key atomically via
``consume``. The in-memory store is process-local, so horizontally scaled
instances each enforce their own limit. The Redis store shares counters
between instances.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Tuple

import redis.asyncio as aioredis

from backend.app.core.config import settings
from backend.app.core.logging import get_logger
from backend.app.middleware.rate_limit.models import RateLimitEntry

logger = get_logger(__name__)


# Fixed-window step executed server-side so concurrent instances cannot
# interleave between the read and the write.
# KEYS[1] = counter key
# ARGV[1] = window length in milliseconds
# ARGV[2] = max requests per window
# Returns {count, ttl_ms, allowed}
CONSUME_SCRIPT = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local max_requests = tonumber(ARGV[2])

    local count = tonumber(redis.call('GET', key))
    local ttl = redis.call('PTTL', key)

    -- Missing or expired window: start a new one
    if count == nil or ttl <= 0 then
        redis.call('SET', key, 1, 'PX', window_ms)
        return {1, window_ms, 1}
    end

    if count < max_requests then
        count = redis.call('INCR', key)
        return {count, ttl, 1}
    end

    -- Over the limit: rejections leave the counter untouched
    return {count, ttl, 0}
"""


class CounterStore(ABC):
    """Abstract base class for rate limit counter stores."""

    @abstractmethod
    async def consume(
        self,
        key: str,
        now: float,
        window_seconds: float,
        max_requests: int,
    ) -> Tuple[RateLimitEntry, bool]:
        """Count one request against ``key`` as a single atomic step.

        A missing or expired entry starts a new window with count 1. A
        current entry below ``max_requests`` is incremented. Otherwise the
        entry is left unchanged and the request is refused.

        Returns:
            The entry after the step and whether the request was admitted.
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitEntry]:
        """Return the entry stored under ``key``, or None."""
        pass

    @abstractmethod
    async def set(self, key: str, entry: RateLimitEntry) -> None:
        """Store ``entry`` under ``key``, replacing any previous value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        pass

    @abstractmethod
    async def sweep(self, now: float) -> int:
        """Delete entries whose window ended before ``now``.

        Returns:
            Number of entries removed.
        """
        pass


class InMemoryCounterStore(CounterStore):
    """Dictionary-backed store shared by every limiter in the process."""

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def consume(
        self,
        key: str,
        now: float,
        window_seconds: float,
        max_requests: int,
    ) -> Tuple[RateLimitEntry, bool]:
        # No await between the read and the write
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(now):
            entry = RateLimitEntry(count=1, reset_at=now + window_seconds)
            self._entries[key] = entry
            return RateLimitEntry(entry.count, entry.reset_at), True

        if entry.count < max_requests:
            entry.count += 1
            return RateLimitEntry(entry.count, entry.reset_at), True

        return RateLimitEntry(entry.count, entry.reset_at), False

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    async def set(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = entry

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def sweep(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)


class RedisCounterStore(CounterStore):
    """Redis-backed store for counters shared across instances.

    Each key holds the integer count with a TTL ending at the window's
    reset time, so Redis expires entries on its own and ``sweep`` has
    nothing to do. ``consume`` runs ``CONSUME_SCRIPT`` with ``EVAL``.

    Example:
        >>> store = RedisCounterStore("redis://localhost:6379/0")
        >>> limiter = rate_limit(60, 10, "login", store=store)
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client
        self._clock = clock

    def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    async def consume(
        self,
        key: str,
        now: float,
        window_seconds: float,
        max_requests: int,
    ) -> Tuple[RateLimitEntry, bool]:
        window_ms = max(1, int(window_seconds * 1000))
        count, ttl_ms, allowed = await self._get_client().eval(
            CONSUME_SCRIPT,
            1,
            key,
            window_ms,
            max_requests,
        )
        entry = RateLimitEntry(count=int(count), reset_at=now + int(ttl_ms) / 1000)
        return entry, bool(int(allowed))

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        client = self._get_client()
        raw = await client.get(key)
        if raw is None:
            return None
        ttl_ms = await client.pttl(key)
        return RateLimitEntry(
            count=int(raw),
            reset_at=self._clock() + max(0, int(ttl_ms)) / 1000,
        )

    async def set(self, key: str, entry: RateLimitEntry) -> None:
        ttl_ms = max(1, int((entry.reset_at - self._clock()) * 1000))
        await self._get_client().set(key, entry.count, px=ttl_ms)

    async def delete(self, key: str) -> None:
        await self._get_client().delete(key)

    async def sweep(self, now: float) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Process-wide store shared by all limiters (singleton pattern)
_store_instance: Optional[CounterStore] = None


def get_counter_store(backend: Optional[str] = None) -> CounterStore:
    """Get or create the process-wide counter store.

    Args:
        backend: 'memory' or 'redis'. Defaults to settings.rate_limit_backend.

    Returns:
        The shared CounterStore instance.
    """
    global _store_instance

    if _store_instance is not None:
        return _store_instance

    backend = (backend or settings.rate_limit_backend).lower()
    if backend == "redis":
        _store_instance = RedisCounterStore(settings.redis_url)
        logger.info("Using Redis rate limit counter store")
    else:
        _store_instance = InMemoryCounterStore()
        logger.debug("Using in-memory rate limit counter store")
    return _store_instance


def reset_counter_store() -> None:
    """Reset the process-wide counter store.

    This is primarily useful for testing.
    """
    global _store_instance
    _store_instance = None
