"""CalendarAggregator: fan out to every source, normalize, deduplicate, cache.

One provider failing is recorded on the result and never aborts the merge of
the others; only when every provider fails does :meth:`CalendarAggregator.sync`
raise :class:`AllSourcesFailed`.  Cloud accounts are fetched with bounded
concurrency.  When the caller's cancel event is set while fetches are in
flight, the fetches finish but their results are discarded and the cache is
left untouched.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from calsync.cache import AggregationCache
from calsync.core import metrics
from calsync.core.telemetry import source_span
from calsync.dedup import Deduplicator
from calsync.errors import (
    AllSourcesFailed,
    CalendarError,
    SyncCancelled,
    build_source_failure,
)
from calsync.models import (
    AggregationResult,
    CacheEntry,
    EventSource,
    SourceFailure,
    TimeRange,
)
from calsync.normalizer import EventNormalizer, IdAllocator
from calsync.sources.base import FetchResult, SourceProvider

logger = logging.getLogger(__name__)

NO_SOURCES_NOTE = "No calendars connected"
DEFAULT_CLOUD_CONCURRENCY = 2

ProviderFactory = Callable[[], Sequence[SourceProvider] | Awaitable[Sequence[SourceProvider]]]


@dataclass
class _Outcome:
    provider: SourceProvider
    result: FetchResult | None = None
    failure: SourceFailure | None = None


class CalendarAggregator:
    """Assembles one deduplicated event list from all configured sources."""

    def __init__(
        self,
        providers: ProviderFactory,
        normalizer: EventNormalizer,
        cache: AggregationCache,
        *,
        deduplicator: Deduplicator | None = None,
        cloud_concurrency: int = DEFAULT_CLOUD_CONCURRENCY,
    ) -> None:
        if cloud_concurrency < 1:
            raise ValueError("cloud_concurrency must be >= 1")
        self._providers = providers
        self._normalizer = normalizer
        self._cache = cache
        self._deduplicator = deduplicator or Deduplicator()
        self._cloud_semaphore = asyncio.Semaphore(cloud_concurrency)

    @property
    def cache(self) -> AggregationCache:
        return self._cache

    async def _resolve_providers(self) -> list[SourceProvider]:
        providers = self._providers()
        if inspect.isawaitable(providers):
            providers = await providers
        return list(providers)

    def cached(self, window: TimeRange) -> AggregationResult | None:
        """The cached result for *window* when still fresh, else None."""
        entry, hit = self._cache.get(window)
        if not hit or entry is None:
            return None
        return AggregationResult(
            events=list(entry.events),
            errors=list(entry.errors),
            fetched_at=entry.fetched_at,
            window=entry.window,
            from_cache=True,
        )

    async def _fetch_one(self, provider: SourceProvider, window: TimeRange) -> _Outcome:
        try:
            with source_span(provider.name):
                if provider.source is EventSource.cloud:
                    async with self._cloud_semaphore:
                        result = await provider.fetch(window)
                else:
                    result = await provider.fetch(window)
        except CalendarError as exc:
            logger.warning(
                "Calendar source %s failed: %s (%s)", provider.name, type(exc).__name__, exc.code
            )
            return _Outcome(provider, failure=build_source_failure(exc, source=provider.name))
        except Exception as exc:
            logger.exception("Calendar source %s raised unexpectedly", provider.name)
            return _Outcome(provider, failure=build_source_failure(exc, source=provider.name))
        return _Outcome(provider, result=result)

    async def sync(
        self,
        window: TimeRange,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AggregationResult:
        """Run one full aggregation for *window* and store it in the cache.

        Raises
        ------
        AllSourcesFailed
            Every configured provider failed.
        SyncCancelled
            *cancel_event* was set before the results were merged.
        """
        started = time.monotonic()
        generation = self._cache.generation
        providers = await self._resolve_providers()

        if not providers:
            logger.info("No calendar sources configured; nothing to fetch")
            return self._finish([], [], window, generation, started, note=NO_SOURCES_NOTE)

        outcomes = await asyncio.gather(*(self._fetch_one(p, window) for p in providers))

        if cancel_event is not None and cancel_event.is_set():
            metrics.record_sync_duration((time.monotonic() - started) * 1000, "cancelled")
            logger.info("Sync stopped while fetching; discarding %d source results", len(outcomes))
            raise SyncCancelled()

        failures = [o.failure for o in outcomes if o.failure is not None]
        for failure in failures:
            metrics.record_source_failure(failure.source, failure.code)
        if len(failures) == len(outcomes):
            metrics.record_sync_duration((time.monotonic() - started) * 1000, "failure")
            raise AllSourcesFailed(failures)

        allocator = IdAllocator()
        events = []
        errors: list[SourceFailure] = list(failures)
        for outcome in outcomes:
            if outcome.result is None:
                continue
            label = outcome.provider.name
            for problem in outcome.result.errors:
                errors.append(build_source_failure(problem, source=label, fatal=False))
            batch = self._normalizer.normalize_batch(outcome.result.records, allocator=allocator)
            events.extend(batch.events)
            for issue in batch.issues:
                errors.append(build_source_failure(issue, source=label, fatal=False))

        merged = self._deduplicator.dedupe(events)
        logger.info(
            "Aggregated %d events (%d before dedup) from %d/%d sources",
            len(merged),
            len(events),
            len(outcomes) - len(failures),
            len(outcomes),
        )
        return self._finish(merged, errors, window, generation, started)

    def _finish(
        self,
        events: list,
        errors: list[SourceFailure],
        window: TimeRange,
        generation: int,
        started: float,
        *,
        note: str | None = None,
    ) -> AggregationResult:
        fetched_at = self._cache.now()
        stored = self._cache.set(
            CacheEntry(
                events=tuple(events),
                fetched_at=fetched_at,
                ttl=self._cache.ttl,
                window=window,
                errors=tuple(errors),
            ),
            generation=generation,
        )
        if not stored:
            logger.info("Cache was invalidated during sync; result not cached")
        metrics.record_sync_duration((time.monotonic() - started) * 1000, "success")
        metrics.record_events_emitted(len(events))
        return AggregationResult(
            events=events,
            errors=errors,
            fetched_at=fetched_at,
            window=window,
            note=note,
        )
