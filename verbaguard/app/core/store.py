"""Key-value store abstraction backing the rate limiters.

Provides a pluggable store with in-memory and Redis implementations. The
limiters only ever talk to ``KeyValueStore``; which backend sits behind it is
a configuration decision.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable
import asyncio
import time

import redis.asyncio as aioredis

from verbaguard.app.exceptions import StoreUnavailableError


@dataclass
class _StoreEntry:
    """Internal store entry with TTL tracking."""

    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class KeyValueStore(ABC):
    """Abstract base class for key-value stores.

    Counter and string operations mirror Redis GET/SETEX/INCR/EXPIRE/DEL;
    the sorted-set operations back the precise sliding-window log.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Retrieve a string value, or None if absent or expired."""

    @abstractmethod
    async def set_with_expiry(self, key: str, ttl_seconds: int, value: str) -> None:
        """Store a value that expires after ``ttl_seconds``."""

    @abstractmethod
    async def increment(self, key: str) -> int:
        """Atomically increment a counter, creating it at 0 when absent.

        Returns:
            The value after the increment.
        """

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> None:
        """Set or refresh the TTL of an existing key."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Remove keys.

        Returns:
            Number of keys that existed and were removed.
        """

    @abstractmethod
    async def sorted_add(self, key: str, member: str, score: float) -> None:
        """Add a member with a score to a sorted set."""

    @abstractmethod
    async def sorted_remove_by_score(self, key: str, max_score: float) -> int:
        """Remove every member whose score is <= ``max_score``."""

    @abstractmethod
    async def sorted_remove(self, key: str, member: str) -> int:
        """Remove one member from a sorted set."""

    @abstractmethod
    async def sorted_count(self, key: str) -> int:
        """Number of members in a sorted set (0 when absent)."""

    @abstractmethod
    async def sliding_window_hit(
        self, key: str, member: str, now: float, window: float, ttl_seconds: int
    ) -> int:
        """Record a hit in a sliding-window log as one atomic step.

        Drops members scored at or before ``now - window``, adds ``member``
        at ``now``, refreshes the TTL and counts the set.

        Returns:
            Number of members after the add, including ``member``.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the store answers commands."""

    async def close(self) -> None:
        """Release any held connections."""


class InMemoryStore(KeyValueStore):
    """In-memory store implementation with TTL support.

    This is the default backend for development and tests. It keeps all
    data in a dictionary and expires entries lazily using the injected
    clock.

    Note: This store is per-process. Running several instances multiplies
    the effective limits; use Redis for shared state.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_interval: int = 1000,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source returning UNIX time in seconds.
            sweep_interval: Writes between full sweeps of expired entries.
                Window keys are never read again once their window ends,
                so lazy expiry alone would keep them forever.
        """
        self._sweep_interval = max(1, sweep_interval)
        self._writes = 0
        self._data: dict[str, _StoreEntry] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self._closed = False

    def _live_entry(self, key: str) -> _StoreEntry | None:
        if self._closed:
            raise StoreUnavailableError("In-memory store is closed")
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: int) -> float | None:
        return self._clock() + ttl_seconds if ttl_seconds > 0 else None

    def _sweep_expired(self) -> int:
        now = self._clock()
        expired_keys = [key for key, entry in self._data.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._data[key]
        return len(expired_keys)

    def _count_write(self) -> None:
        self._writes += 1
        if self._writes % self._sweep_interval == 0:
            self._sweep_expired()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            if isinstance(entry.value, dict):
                raise TypeError(f"Key '{key}' holds a sorted set")
            return str(entry.value)

    async def set_with_expiry(self, key: str, ttl_seconds: int, value: str) -> None:
        async with self._lock:
            self._live_entry(key)
            self._count_write()
            self._data[key] = _StoreEntry(value=value, expires_at=self._expiry(ttl_seconds))

    async def increment(self, key: str) -> int:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._count_write()
                entry = _StoreEntry(value="0")
                self._data[key] = entry
            new_value = int(entry.value) + 1
            entry.value = str(new_value)
            return new_value

    async def expire(self, key: str, ttl_seconds: int) -> None:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                entry.expires_at = self._expiry(ttl_seconds)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live_entry(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    def _sorted_set(self, key: str, create: bool = False) -> dict[str, float] | None:
        entry = self._live_entry(key)
        if entry is None:
            if not create:
                return None
            entry = _StoreEntry(value={})
            self._data[key] = entry
        if not isinstance(entry.value, dict):
            raise TypeError(f"Key '{key}' does not hold a sorted set")
        return entry.value

    async def sorted_add(self, key: str, member: str, score: float) -> None:
        async with self._lock:
            self._count_write()
            self._sorted_set(key, create=True)[member] = score

    async def sorted_remove_by_score(self, key: str, max_score: float) -> int:
        async with self._lock:
            members = self._sorted_set(key)
            if not members:
                return 0
            stale = [m for m, score in members.items() if score <= max_score]
            for member in stale:
                del members[member]
            return len(stale)

    async def sorted_remove(self, key: str, member: str) -> int:
        async with self._lock:
            members = self._sorted_set(key)
            if not members or member not in members:
                return 0
            del members[member]
            return 1

    async def sorted_count(self, key: str) -> int:
        async with self._lock:
            members = self._sorted_set(key)
            return len(members) if members else 0

    async def sliding_window_hit(
        self, key: str, member: str, now: float, window: float, ttl_seconds: int
    ) -> int:
        async with self._lock:
            self._count_write()
            members = self._sorted_set(key, create=True)
            for stale in [m for m, score in members.items() if score <= now - window]:
                del members[stale]
            members[member] = now
            self._data[key].expires_at = self._expiry(ttl_seconds)
            return len(members)

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True

    async def clear(self) -> None:
        """Drop every key (tests and maintenance)."""
        async with self._lock:
            self._data.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the store.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            return self._sweep_expired()


class RedisStore(KeyValueStore):
    """Redis-based store implementation.

    Connection and command errors are not caught here: they propagate as
    ``redis.RedisError`` and the limiters decide how to degrade.

    Example:
        >>> store = RedisStore("redis://localhost:6379/0")
        >>> await store.set_with_expiry("key", 60, "value")
    """

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        connect_timeout: float = 10.0,
        command_timeout: float = 5.0,
    ) -> None:
        """Initialize the Redis store.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            redis_client: Optional pre-built async client (tests)
            connect_timeout: Seconds allowed to establish a connection
            command_timeout: Seconds allowed per command
        """
        self._redis_url = redis_url
        self._redis = redis_client
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout

    def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=self._connect_timeout,
                socket_timeout=self._command_timeout,
            )
        return self._redis

    async def get(self, key: str) -> str | None:
        value = await self._get_client().get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set_with_expiry(self, key: str, ttl_seconds: int, value: str) -> None:
        await self._get_client().setex(key, ttl_seconds, value)

    async def increment(self, key: str) -> int:
        return int(await self._get_client().incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self._get_client().expire(key, ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._get_client().delete(*keys))

    async def sorted_add(self, key: str, member: str, score: float) -> None:
        await self._get_client().zadd(key, {member: score})

    async def sorted_remove_by_score(self, key: str, max_score: float) -> int:
        return int(await self._get_client().zremrangebyscore(key, "-inf", max_score))

    async def sorted_remove(self, key: str, member: str) -> int:
        return int(await self._get_client().zrem(key, member))

    async def sorted_count(self, key: str) -> int:
        return int(await self._get_client().zcard(key))

    async def sliding_window_hit(
        self, key: str, member: str, now: float, window: float, ttl_seconds: int
    ) -> int:
        # MULTI/EXEC so concurrent hits see each other in order
        async with self._get_client().pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, "-inf", now - window)
            pipe.zadd(key, {member: now})
            pipe.expire(key, ttl_seconds)
            pipe.zcard(key)
            results = await pipe.execute()
        return int(results[-1])

    async def ping(self) -> bool:
        return bool(await self._get_client().ping())

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Global store instance
_store_instance: KeyValueStore | None = None


def get_store(
    backend: str | None = None,
    redis_url: str | None = None,
    force_new: bool = False,
) -> KeyValueStore:
    """Get or create the process store instance.

    Args:
        backend: Store backend to use ('memory', 'redis', or None for auto).
            When None, checks settings.redis_enabled.
        redis_url: Redis connection URL. If not provided, uses settings.redis_url.
        force_new: If True, create a new instance even if one exists.

    Returns:
        A KeyValueStore instance (InMemoryStore or RedisStore).
    """
    global _store_instance

    if _store_instance is not None and not force_new:
        return _store_instance

    # Import settings here to avoid circular imports
    from verbaguard.app.core.config import settings

    if backend == "redis":
        use_redis = True
    elif backend == "memory":
        use_redis = False
    else:
        use_redis = settings.redis_enabled

    if use_redis:
        _store_instance = RedisStore(
            redis_url or settings.redis_url,
            connect_timeout=settings.redis_connect_timeout,
            command_timeout=settings.redis_command_timeout,
        )
    else:
        _store_instance = InMemoryStore()
    return _store_instance


def reset_store() -> None:
    """Reset the global store instance.

    This is primarily useful for testing.
    """
    global _store_instance
    _store_instance = None
