"""
Bounded Memory Cache Module

- Fixed capacity with least-recently-used eviction
- get() promotes an entry to most-recent; a miss leaves ordering untouched
- Thread-safe operations
- Cache statistics tracking
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List

from .exceptions import ConfigurationError
from .logging_config import get_core_logger

logger = get_core_logger()


class _Missing:
    """Sentinel returned by get() for absent keys."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


@dataclass
class CacheConfig:
    """Configuration for the bounded cache."""

    max_size: int = 50


class BoundedCache:
    """
    LRU cache holding at most ``max_size`` entries.

    Recency is the order of the underlying OrderedDict: the front is the
    least recently used entry and the first to go.

    Example:
        cache = BoundedCache(CacheConfig(max_size=2))
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")      # "a" is now most recent
        cache.set("c", 3)   # evicts "b"
    """

    def __init__(self, config: CacheConfig = None):
        self.config = config or CacheConfig()
        if self.config.max_size < 1:
            raise ConfigurationError(
                "max_size", self.config.max_size, "cache must hold at least one entry"
            )
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
        }

    @property
    def max_size(self) -> int:
        return self.config.max_size

    def set(self, key: Hashable, value: Any) -> None:
        """Insert or refresh ``key`` as the most recently used entry."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = value

            while len(self._entries) > self.config.max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug("cache_eviction", evicted_key=str(evicted_key))

    def get(self, key: Hashable, default: Any = MISSING) -> Any:
        """
        Get a cached value.

        Returns:
            The value (promoted to most recent), or ``default`` when absent.
        """
        with self._lock:
            if key not in self._entries:
                self._stats["misses"] += 1
                return default

            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return self._entries[key]

    def has(self, key: Hashable) -> bool:
        """Membership test; does not affect recency."""
        with self._lock:
            return key in self._entries

    def delete(self, key: Hashable) -> bool:
        """
        Remove an entry.

        Returns:
            True if the entry was found and removed, False otherwise.
        """
        with self._lock:
            if key in self._entries:
                del self._entries[key]
                return True
            return False

    def clear(self) -> int:
        """
        Clear all entries.

        Returns:
            Number of entries cleared.
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            logger.info("cache_cleared", entries_removed=count)
            return count

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[Hashable]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: Hashable) -> bool:
        return self.has(key)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total_requests = self._stats["hits"] + self._stats["misses"]
            hit_rate = (
                self._stats["hits"] / total_requests if total_requests > 0 else 0.0
            )

            return {
                "size": len(self._entries),
                "max_size": self.config.max_size,
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "hit_rate": round(hit_rate, 3),
                "evictions": self._stats["evictions"],
            }
