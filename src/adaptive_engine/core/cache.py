"""
Result cache contract used by cache-aware deduplication.

The engine never owns a cache store; it consults whatever implements
``CacheBackend``. ``InMemoryCache`` is the single-process reference backend
(bounded LRU + TTL) used in tests and small deployments.

Architecture:
    ::

        CacheBackend (Protocol)
        └── InMemoryCache    single-process, bounded LRU, TTL via Clock

        API: get(key) → value | None
             set(key, value, ttl_seconds=None)
             delete(key)
             exists(key) → bool
             clear()

Guardrails:
    ``None`` means "miss". Results that are literally ``None`` are not
    cacheable and the orchestrator does not write them back.

Examples:
    >>> cache = InMemoryCache(max_size=1000, default_ttl_seconds=300)
    >>> cache.set("s3:list_buckets:ab12", ["a", "b"])
    >>> cache.get("s3:list_buckets:ab12")
    ['a', 'b']
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Protocol

from .clock import Clock, default_clock


class CacheBackend(Protocol):
    """Protocol for cache backend implementations.

    ``get``/``set`` are expected to be O(1)-ish and free of side effects
    beyond the store itself.
    """

    def get(self, key: str) -> Any | None:
        """Retrieve a value by key, or ``None`` if missing/expired."""
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Store a value with optional TTL (``None`` → backend default)."""
        ...

    def delete(self, key: str) -> None:
        """Remove a key. No-op if missing."""
        ...

    def exists(self, key: str) -> bool:
        """Check if a key exists and has not expired."""
        ...

    def clear(self) -> None:
        """Remove all keys."""
        ...


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached.

    Example:
        cache = InMemoryCache(max_size=500, default_ttl_seconds=1800)
        cache.set("ec2:describe_regions:9f", {"Regions": []}, ttl_seconds=60)
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: float | None = 3600,
        clock: Clock | None = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._store: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock or default_clock()
        self.hits = 0
        self.misses = 0

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock.now() > expires_at

    def get(self, key: str) -> Any | None:
        """Retrieve a value by key."""
        entry = self._store.get(key)
        if entry is None:
            self.misses += 1
            return None

        value, expires_at = entry
        if self._expired(expires_at):
            self.delete(key)
            self.misses += 1
            return None

        self._store.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Store a value with optional TTL.

        A TTL of zero or less means the value is already stale: it is not
        stored and any previous entry for ``key`` is dropped.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        if ttl is not None and ttl <= 0:
            self.delete(key)
            return
        expires_at = (self._clock.now() + ttl) if ttl is not None else None

        if key not in self._store and len(self._store) >= self._max_size:
            self._store.popitem(last=False)

        self._store[key] = (value, expires_at)
        self._store.move_to_end(key)

    def delete(self, key: str) -> None:
        """Remove a key from the cache."""
        self._store.pop(key, None)

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        entry = self._store.get(key)
        if entry is None:
            return False
        if self._expired(entry[1]):
            self.delete(key)
            return False
        return True

    def clear(self) -> None:
        """Remove all keys."""
        self._store.clear()

    def size(self) -> int:
        """Return current number of cached keys."""
        return len(self._store)


__all__ = ["CacheBackend", "InMemoryCache"]
