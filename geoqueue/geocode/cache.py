"""Bounded runtime cache of geocoded coordinates with frequency-based eviction."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from geoqueue.geocode.models import Coordinate
from geoqueue.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)


def normalise_key(query: str) -> str:
    """Return the case-insensitive cache key for a query."""
    return query.lower()


@dataclass(slots=True)
class CacheEntry:
    """A cached coordinate plus the number of lookups it has satisfied."""

    key: str
    coordinate: Coordinate
    hits: int = 0


class GeocodeCache:
    """Maps normalised query text to coordinates.

    The cache may grow past ``max_size`` by up to ``max_overflow`` entries.
    The insertion that crosses that threshold trims the cache back to exactly
    ``max_size`` by dropping the entries with the fewest hits. Entries with
    equal hit counts are evicted in no particular order.
    """

    def __init__(self, *, max_size: int, max_overflow: int, metrics: Optional[MetricsRegistry] = None) -> None:
        self._max_size = max_size
        self._max_overflow = max_overflow
        self._metrics = metrics or MetricsRegistry()
        self._entries: Dict[str, CacheEntry] = {}

    def lookup(self, query: str) -> Optional[Coordinate]:
        """Return the cached coordinate for ``query`` and count the hit."""
        entry = self._entries.get(normalise_key(query))
        if entry is None:
            self._metrics.incr("cache_misses")
            return None
        entry.hits += 1
        self._metrics.incr("cache_hits")
        return entry.coordinate

    def store(self, query: str, coordinate: Coordinate) -> None:
        """Insert a freshly resolved coordinate, evicting if over threshold."""
        key = normalise_key(query)
        if key in self._entries:
            # a concurrent dispatch for the same key already landed
            self._entries[key].coordinate = coordinate
            return
        self._entries[key] = CacheEntry(key=key, coordinate=coordinate)
        if len(self._entries) > self._max_size + self._max_overflow:
            self._evict(keep=key)

    def _evict(self, *, keep: str) -> None:
        excess = len(self._entries) - self._max_size
        candidates: List[CacheEntry] = sorted(
            (entry for entry in self._entries.values() if entry.key != keep),
            key=lambda entry: entry.hits,
        )
        for entry in candidates[:excess]:
            del self._entries[entry.key]
        removed = min(excess, len(candidates))
        # only reachable when max_size is zero
        if len(self._entries) > self._max_size:
            del self._entries[keep]
            removed += 1
        self._metrics.incr("cache_evictions", removed)
        LOGGER.info("cache_evicted", removed=removed, size=len(self._entries))

    def hits(self, query: str) -> Optional[int]:
        entry = self._entries.get(normalise_key(query))
        return entry.hits if entry is not None else None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, query: object) -> bool:
        return isinstance(query, str) and normalise_key(query) in self._entries

    def __len__(self) -> int:
        return len(self._entries)
