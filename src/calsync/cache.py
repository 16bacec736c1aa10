"""AggregationCache: the last assembled event set with a TTL.

Entries are replaced whole under a lock.  Every ``invalidate()`` bumps a
generation counter; a writer that captured the generation before fetching
passes it back to :meth:`AggregationCache.set`, and the write is dropped if an
invalidation happened in between.  That keeps an aggregation started before an
account was added or removed from reinstating the stale account set.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from calsync.core import metrics
from calsync.models import CacheEntry, TimeRange

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=2)


class AggregationCache:
    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ttl = ttl
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._entry: CacheEntry | None = None
        self._generation = 0

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def now(self) -> datetime:
        return self._clock()

    def get(self, window: TimeRange | None = None) -> tuple[CacheEntry | None, bool]:
        """Return ``(entry, hit)``. Expired entries and other windows are misses."""
        with self._lock:
            entry = self._entry
        hit = (
            entry is not None
            and entry.is_fresh(self._clock())
            and (window is None or entry.window == window)
        )
        metrics.record_cache_lookup(hit)
        return (entry if hit else None), hit

    def set(self, entry: CacheEntry, *, generation: int | None = None) -> bool:
        """Store *entry*; returns False when a newer invalidation wins."""
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(
                    "Dropping cache write from generation %d (current %d)",
                    generation,
                    self._generation,
                )
                return False
            self._entry = entry
            return True

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None
            self._generation += 1
        logger.debug("Aggregation cache invalidated")
