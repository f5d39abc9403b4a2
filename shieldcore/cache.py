"""
SHIELDCORE Cache

Bounded, explicitly owned LRU cache. Circuit artifacts (proving keys and
witness generators) are large and expensive to load, so each
CachedArtifactProvider owns one of these instead of sharing a module-level
cache. Growth is bounded by ``max_size``; when full, the least recently used
entry is evicted and ``on_evict`` is called with it.

Usage
─────

    from shieldcore.cache import LRUCache

    cache = LRUCache(max_size=6)
    artifacts = cache.get_or_compute(shape, lambda: loader.load(shape))
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, Generic, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# CACHE METRICS
# ════════════════════════════════════════════════════════════════════════════


class CacheMetrics:
    """Cache performance metrics with thread-safe counters."""

    def __init__(self, max_size: int = 0):
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.sets = 0
        self.current_size = 0
        self.max_size = max_size

    @property
    def hit_ratio(self) -> float:
        """Cache hit ratio (0.0 - 1.0)."""
        with self._lock:
            total = self.hits + self.misses
            if total == 0:
                return 0.0
            return self.hits / total

    def to_dict(self) -> Dict[str, float]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "sets": self.sets,
                "current_size": self.current_size,
                "max_size": self.max_size,
                "hit_ratio": round(self.hits / total if total else 0.0, 4),
            }


# ════════════════════════════════════════════════════════════════════════════
# LRU CACHE
# ════════════════════════════════════════════════════════════════════════════


class LRUCache(Generic[K, V]):
    """
    Least Recently Used cache with O(1) operations.

    Uses OrderedDict for LRU tracking. Thread-safe for concurrent access.

    Example:
        cache = LRUCache(max_size=2)
        cache.get_or_compute("a", load_a)
        cache.get_or_compute("b", load_b)
        cache.get_or_compute("a", load_a)   # hit; marks "a" as recently used
        cache.get_or_compute("c", load_c)   # evicts "b"
    """

    def __init__(
        self,
        max_size: int = 1000,
        on_evict: Optional[Callable[[K, V], None]] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._cache: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.RLock()
        self._metrics = CacheMetrics(max_size=max_size)
        self._on_evict = on_evict

    @property
    def max_size(self) -> int:
        return self._max_size

    def set(self, key: K, value: V) -> None:
        """Set value, evicting LRU entries if necessary."""
        with self._lock:
            if key in self._cache:
                self._cache[key] = value
                self._cache.move_to_end(key)
                self._metrics.sets += 1
                return

            while len(self._cache) >= self._max_size:
                self._evict_one()

            self._cache[key] = value
            self._metrics.sets += 1
            self._metrics.current_size = len(self._cache)

    def get_or_compute(self, key: K, compute: Callable[[], V]) -> V:
        """Return the cached value for key, computing and storing it on a miss.

        The lock is held while computing, so concurrent callers asking for
        the same key never load it twice.
        """
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                self._metrics.hits += 1
                return self._cache[key]
            self._metrics.misses += 1
            value = compute()
            self.set(key, value)
            return value

    @property
    def metrics(self) -> CacheMetrics:
        with self._lock:
            self._metrics.current_size = len(self._cache)
            return self._metrics

    def _evict_one(self) -> None:
        """Evict the least recently used entry."""
        key, value = self._cache.popitem(last=False)
        self._metrics.evictions += 1
        self._metrics.current_size = len(self._cache)
        logger.debug("Evicted cache entry %r", key)
        if self._on_evict:
            self._on_evict(key, value)
