"""
TTL cache with access-count eviction.

Expiry is checked lazily on read. When a new key arrives and the cache is
full, expired entries are purged first; if it is still full, the least
accessed fifth of the entries is dropped.
"""

import json
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from crmpilot.utils.logging import logger


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float
    access_count: int = 0
    last_accessed: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class TTLCache:
    """String-keyed cache with lazy expiry and least-accessed eviction."""

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300.0,
        eviction_fraction: float = 0.2,
        clock: Callable[[], float] = time.time,
        name: str = "cache",
    ):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.eviction_fraction = eviction_fraction
        self.name = name
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self.misses += 1
            return None

        entry.access_count += 1
        entry.last_accessed = now
        self.hits += 1
        return entry.data

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        if key not in self._entries and len(self._entries) >= self.max_size:
            self.purge_expired()
            if len(self._entries) >= self.max_size:
                self._evict_least_accessed()

        self._entries[key] = CacheEntry(
            data=value,
            timestamp=now,
            ttl=self.default_ttl if ttl is None else ttl,
            last_accessed=now,
        )

    def _evict_least_accessed(self) -> list[str]:
        count = math.ceil(len(self._entries) * self.eviction_fraction)
        # sorted() is stable, so equal counts evict the oldest insertion first
        ranked = sorted(self._entries.items(), key=lambda item: item[1].access_count)
        victims = [key for key, _ in ranked[:count]]
        for key in victims:
            del self._entries[key]
        self.evictions += len(victims)
        logger.debug(f"{self.name}: evicted {len(victims)} least accessed entries")
        return victims

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_matching(self, pattern: str) -> int:
        """Delete every key containing the substring."""
        keys = [k for k in self._entries if pattern in k]
        for key in keys:
            del self._entries[key]
        if keys:
            logger.debug(f"{self.name}: invalidated {len(keys)} entries matching '{pattern}'")
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def approximate_bytes(self) -> int:
        total = 0
        for key, entry in self._entries.items():
            try:
                payload = json.dumps(entry.data, default=str)
            except (TypeError, ValueError):
                payload = repr(entry.data)
            total += len(key) + len(payload)
        return total

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "evictions": self.evictions,
            "approximate_bytes": self.approximate_bytes(),
        }
