"""SyncScheduler: periodic and on-demand aggregation with a single-flight guard.

State machine: ``Idle -> Running -> Idle``.  The transition into ``Running``
is a synchronous check-and-set, so a second request arriving while a run is
in flight is rejected with :class:`SyncInProgress` (manual triggers) or
skipped (timer ticks); cache reads wait for the in-flight run instead.

Each run executes in its own task.  Stopping the scheduler sets the cancel
event observed by the aggregator and cancels the timer, but never cancels a
run mid-fetch: the provider calls complete and their results are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from croniter import croniter

from calsync.aggregator import CalendarAggregator
from calsync.core.logging import sync_run_context
from calsync.core.telemetry import sync_span
from calsync.errors import CalendarError, SyncInProgress, sanitize_error_message
from calsync.models import AggregationResult, SyncResult, SyncStatus, TimeRange

logger = logging.getLogger(__name__)

DEFAULT_CRON = "0 6 * * *"
DEFAULT_RESUME_DELAY_SECONDS = 5.0


class SyncScheduler:
    """Owns sync status and the background timer for one aggregator."""

    def __init__(
        self,
        aggregator: CalendarAggregator,
        *,
        tz: tzinfo,
        window_factory: Callable[[], TimeRange] | None = None,
        enabled: bool = True,
        cron: str = DEFAULT_CRON,
        interval: timedelta | None = None,
        resume_delay_seconds: float = DEFAULT_RESUME_DELAY_SECONDS,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        if interval is None and not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron!r}")
        if interval is not None and interval <= timedelta(0):
            raise ValueError("interval must be positive")
        self._aggregator = aggregator
        self._tz = tz
        self._window_factory = window_factory or (lambda: TimeRange.for_days(tz))
        self._enabled = enabled
        self._cron = cron
        self._interval = interval
        self._resume_delay = resume_delay_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sleep = sleep or asyncio.sleep

        self._status = SyncStatus(is_enabled=enabled)
        self._running = False
        self._run_task: asyncio.Task[AggregationResult] | None = None
        self._cancel_event = asyncio.Event()
        self._timer_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._started = False

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def started(self) -> bool:
        return self._started

    def status(self) -> SyncStatus:
        """Snapshot of the current status; safe to hand to any caller."""
        return self._status

    def _update_status(self, **changes: Any) -> None:
        self._status = self._status.model_copy(update=changes)

    def next_fire_time(self, after: datetime | None = None) -> datetime:
        """Next scheduled sync time after *after* (default: now)."""
        anchor = (after or self._clock()).astimezone(self._tz)
        if self._interval is not None:
            last = self._status.last_sync_time
            base = last if last is not None and last + self._interval > anchor else anchor
            return base + self._interval
        return croniter(self._cron, anchor).get_next(datetime)

    def _missed_fire(self, now: datetime) -> bool:
        last = self._status.last_sync_time
        if last is None:
            return True
        if self._interval is not None:
            return now - last >= self._interval
        return croniter(self._cron, last.astimezone(self._tz)).get_next(datetime) <= now

    # ------------------------------------------------------------------
    # Running syncs
    # ------------------------------------------------------------------

    def _launch(self, window: TimeRange, trigger: str) -> asyncio.Task[AggregationResult]:
        if self._running:
            raise SyncInProgress()
        self._running = True
        self._update_status(is_running=True)
        task = asyncio.create_task(
            self._execute(window, trigger, self._cancel_event), name=f"calsync-sync-{trigger}"
        )
        # outcome is already logged and reflected in the status
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        self._run_task = task
        return task

    async def _execute(
        self, window: TimeRange, trigger: str, cancel_event: asyncio.Event
    ) -> AggregationResult:
        run_id = uuid.uuid4().hex[:12]
        try:
            with sync_run_context(run_id), sync_span(run_id, trigger):
                logger.info("Calendar sync started (trigger=%s)", trigger)
                result = await self._aggregator.sync(window, cancel_event=cancel_event)
        except BaseException as exc:
            message = exc.message if isinstance(exc, CalendarError) else type(exc).__name__
            self._update_status(last_error=sanitize_error_message(message))
            if isinstance(exc, CalendarError):
                logger.warning("Calendar sync failed (trigger=%s): %s", trigger, exc.code)
            elif isinstance(exc, Exception):
                logger.exception("Calendar sync crashed (trigger=%s)", trigger)
            raise
        else:
            self._update_status(last_sync_time=self._clock(), last_error=None)
            logger.info(
                "Calendar sync finished (trigger=%s, events=%d, source_errors=%d)",
                trigger,
                len(result.events),
                len(result.errors),
            )
            return result
        finally:
            self._running = False
            self._update_status(
                is_running=False,
                next_sync_time=self.next_fire_time() if self._timer_task is not None else None,
            )

    async def trigger_sync(
        self, *, trigger: str = "manual", window: TimeRange | None = None
    ) -> SyncResult:
        """Run a sync now.

        Raises :class:`SyncInProgress` when a run is already in flight; every
        other failure is reported on the returned :class:`SyncResult`.
        """
        task = self._launch(window or self._window_factory(), trigger)
        try:
            result = await asyncio.shield(task)
        except CalendarError as exc:
            return SyncResult(
                success=False,
                sync_time=self._clock(),
                error=sanitize_error_message(exc.message),
                errors=list(getattr(exc, "failures", [])),
            )
        except Exception as exc:
            return SyncResult(
                success=False, sync_time=self._clock(), error=type(exc).__name__
            )
        return SyncResult(
            success=True,
            events_count=len(result.events),
            sync_time=result.fetched_at,
            message=result.note,
            errors=result.errors,
        )

    async def aggregate(self, window: TimeRange) -> AggregationResult:
        """Serve *window* from cache, joining or starting a run as needed.

        A reader that joined a run which then failed gets that run's error
        instead of starting another fan-out against the same sources.
        """
        while self._run_task is not None and not self._run_task.done():
            joined = self._run_task
            await asyncio.wait({joined})
            cached = self._aggregator.cached(window)
            if cached is not None:
                return cached
            if not joined.cancelled() and joined.exception() is not None:
                raise joined.exception()
        cached = self._aggregator.cached(window)
        if cached is not None:
            return cached
        return await asyncio.shield(self._launch(window, "read"))

    async def tick(self) -> SyncResult | None:
        """One timer firing. Skipped (returns None) while a run is in flight."""
        if self._running:
            logger.info("Scheduled sync skipped; previous run still in progress")
            return None
        return await self.trigger_sync(trigger="scheduled")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_timer(self) -> None:
        while True:
            now = self._clock()
            fire_at = self.next_fire_time(now)
            self._update_status(next_sync_time=fire_at)
            await self._sleep(max(0.0, (fire_at - now).total_seconds()))
            try:
                await self.tick()
            except SyncInProgress:
                logger.info("Scheduled sync skipped; previous run still in progress")

    async def _delayed_sync(self, delay: float, trigger: str) -> None:
        if delay > 0:
            await self._sleep(delay)
        try:
            result = await self.trigger_sync(trigger=trigger)
        except SyncInProgress:
            logger.debug("%s sync skipped; a run is already in flight", trigger)
            return
        if not result.success:
            logger.warning("%s sync failed: %s", trigger, result.error)

    def request_sync(self, trigger: str = "on-demand") -> asyncio.Task[None]:
        """Run a background sync on the shared single-flight path (skipped if one is running)."""
        return self._spawn(self._delayed_sync(0, trigger), f"calsync-{trigger}-sync")

    async def start(self) -> None:
        """Start the timer and run an initial sync if none completed today."""
        if self._started:
            return
        self._started = True
        if not self._enabled:
            logger.info("Calendar sync scheduler disabled")
            return

        self._timer_task = asyncio.create_task(self._run_timer(), name="calsync-sync-timer")
        now = self._clock()
        last = self._status.last_sync_time
        if last is None or last.astimezone(self._tz).date() != now.astimezone(self._tz).date():
            self._spawn(self._delayed_sync(0, "initial"), "calsync-initial-sync")
        logger.info(
            "Calendar sync scheduler started (%s)",
            f"every {self._interval}" if self._interval is not None else f"cron={self._cron}",
        )

    async def stop(self) -> None:
        """Stop the timer; an in-flight run finishes but its results are discarded."""
        if not self._started:
            return
        self._started = False
        self._cancel_event.set()

        tasks = [t for t in (self._timer_task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timer_task = None
        self._background.clear()

        run_task = self._run_task
        if run_task is not None and not run_task.done():
            await asyncio.wait({run_task})
        # later runs (reads after stop, a restart) must not inherit the cancellation
        self._cancel_event = asyncio.Event()
        self._update_status(next_sync_time=None)
        logger.info("Calendar sync scheduler stopped")

    def on_resume(self) -> asyncio.Task[None] | None:
        """Host woke from sleep: catch up after a short delay if a fire time was missed."""
        if not self._started or not self._enabled:
            return None
        if not self._missed_fire(self._clock()):
            return None
        logger.info(
            "Missed scheduled sync while suspended; catching up in %.0fs", self._resume_delay
        )
        return self._spawn(self._delayed_sync(self._resume_delay, "resume"), "calsync-resume-sync")
