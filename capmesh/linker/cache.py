"""Resolution cache.

In-memory TTL cache keyed by ``(capability, consumer)``. Used twice by the
resolver: once for capability bindings and once, as a separate instance, for
resolved file paths.

- Entries past ``expires_at`` are treated as misses (lazy invalidation) but
  stay physically present until evicted, so ``peek_stale`` can still return
  them as a last resort.
- When ``max_size`` is reached the least recently used entry is evicted.
- Writes are last-writer-wins.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, Tuple, TypeVar

from capmesh.core.logging_config import get_logger

logger = get_logger(__name__)

V = TypeVar("V")

CacheKey = Tuple[str, str]


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    key: CacheKey
    value: V
    expires_at: float


@dataclass(frozen=True)
class CacheLookup(Generic[V]):
    """Result of a cache read."""

    hit: bool
    value: Optional[V] = None


class ResolutionCache(Generic[V]):
    """TTL + LRU cache for resolution results.

    Attributes:
        max_size: Maximum number of entries before LRU eviction.
        default_ttl_ms: TTL applied when ``put`` is called without one.
        namespace: Label used in log lines (e.g. ``capability`` or ``file``).
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        default_ttl_ms: int = 300_000,
        namespace: str = "capability",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty cache.

        Args:
            max_size: Maximum number of entries (must be positive).
            default_ttl_ms: Default time-to-live in milliseconds.
            namespace: Cache namespace label.
            clock: Monotonic clock in seconds; injectable for tests.
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.default_ttl_ms = default_ttl_ms
        self.namespace = namespace
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry[V]]" = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(capability: str, consumer: str) -> CacheKey:
        return (capability, consumer)

    async def get(self, capability: str, consumer: str) -> CacheLookup[V]:
        """Look up a live entry.

        Args:
            capability: Capability name (or file id for the file namespace).
            consumer: Consumer identifier (or client id).

        Returns:
            ``CacheLookup(hit=True, value=...)`` for a live entry, otherwise a miss.
        """
        key = self.key(capability, consumer)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return CacheLookup(hit=False)
            if entry.expires_at <= self._clock():
                self.misses += 1
                logger.debug("cache[%s] expired entry for %s", self.namespace, key)
                return CacheLookup(hit=False)
            self._entries.move_to_end(key)
            self.hits += 1
            return CacheLookup(hit=True, value=entry.value)

    async def put(self, capability: str, consumer: str, value: V, ttl_ms: Optional[int] = None) -> CacheEntry[V]:
        """Store a value, evicting the least recently used entry when full.

        Args:
            capability: Capability name.
            consumer: Consumer identifier.
            value: Value to cache (a ``Binding`` or a resolved path).
            ttl_ms: Time-to-live in milliseconds; defaults to ``default_ttl_ms``.

        Returns:
            The stored ``CacheEntry``.
        """
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        key = self.key(capability, consumer)
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl / 1000.0)
        async with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = entry
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("cache[%s] evicted LRU entry %s", self.namespace, evicted)
        return entry

    async def peek_stale(self, capability: str, consumer: str) -> Optional[V]:
        """Return the stored value for a key even if it has expired."""
        async with self._lock:
            entry = self._entries.get(self.key(capability, consumer))
            return entry.value if entry is not None else None

    async def invalidate(self, capability: str, consumer: Optional[str] = None) -> int:
        """Drop entries for a capability (all consumers unless one is given).

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            if consumer is not None:
                return 1 if self._entries.pop(self.key(capability, consumer), None) is not None else 0
            doomed = [k for k in self._entries if k[0] == capability]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    async def purge_expired(self) -> int:
        """Physically remove expired entries. Optional sweep; reads never need it."""
        now = self._clock()
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def size(self) -> int:
        """Get the current number of physically stored entries."""
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "size": self.size(),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
        }
