"""Bounded page cache with least-recently-used and time-to-live eviction."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, TypeVar

__all__ = ["TTLCache", "CacheStats"]

LOGGER = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


class TTLCache(Generic[V]):
    """LRU cache whose entries also expire ``ttl`` seconds after insertion.

    Eviction policy: an entry older than ``ttl`` is dropped on access; when
    inserting beyond ``max_entries`` the least recently used entry goes.

    Args:
        max_entries: Capacity; must be at least 1.
        ttl: Lifetime of an entry in seconds; ``0`` or less disables expiry.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, max_entries: int = 100, ttl: float = 300.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[float, V]] = OrderedDict()
        self.stats = CacheStats()

    def get(self, key: Hashable) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            return None
        stored_at, value = entry
        if self._expired(stored_at):
            del self._entries[key]
            self.stats.expirations += 1
            self.stats.misses += 1
            return None
        self._entries.move_to_end(key)
        self.stats.hits += 1
        return value

    def put(self, key: Hashable, value: V) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (self._clock(), value)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.stats.evictions += 1
            LOGGER.debug("Evicted %s from cache", evicted)

    def purge_expired(self) -> int:
        expired = [key for key, (stored_at, _) in self._entries.items() if self._expired(stored_at)]
        for key in expired:
            del self._entries[key]
        self.stats.expirations += len(expired)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def _expired(self, stored_at: float) -> bool:
        return self._ttl > 0 and self._clock() - stored_at >= self._ttl

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry[0])

    def __len__(self) -> int:
        return len(self._entries)
