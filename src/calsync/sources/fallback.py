"""NativeCalendarProvider: helper first, script fallback second, never a loop."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextvars import ContextVar

from calsync.errors import CalendarError, PermissionDenied, SourceUnavailable
from calsync.models import EventSource, TimeRange
from calsync.sources.base import FetchResult, SourceProvider
from calsync.sources.native import NativeHelperProvider
from calsync.sources.script import ScriptFallbackProvider

logger = logging.getLogger(__name__)

# Set while a fallback attempt is running in the current task.
_fallback_active: ContextVar[bool] = ContextVar("calsync_native_fallback_active", default=False)


class NativeCalendarProvider(SourceProvider):
    """Reads the native calendar store through whichever access path works.

    The helper is tried first.  When it is missing, fails to run, or is
    denied, the script fallback is tried once.  A fallback attempt never
    starts another fallback, even if the chain is re-entered from inside it.
    If either attempt was denied, the combined failure is ``PermissionDenied``
    so callers can tell "denied" from "broken".
    """

    def __init__(
        self,
        helper: NativeHelperProvider | None,
        script: ScriptFallbackProvider | None,
    ) -> None:
        if helper is None and script is None:
            raise ValueError("at least one of helper or script must be provided")
        self._helper = helper
        self._script = script

    @property
    def name(self) -> str:
        return EventSource.native.value

    @property
    def source(self) -> EventSource:
        return EventSource.native

    @property
    def script(self) -> ScriptFallbackProvider | None:
        return self._script

    def select_calendars(self, names: Sequence[str]) -> None:
        """Apply one calendar selection to both access paths."""
        for provider in (self._helper, self._script):
            if provider is not None:
                provider.select_calendars(names)

    async def fetch(self, window: TimeRange) -> FetchResult:
        if self._helper is None:
            return await self._fallback(window, primary_error=None)
        try:
            return await self._helper.fetch(window)
        except (SourceUnavailable, PermissionDenied) as exc:
            if self._script is None or _fallback_active.get():
                raise
            logger.info(
                "Native helper unavailable (%s); falling back to calendar script", exc.code
            )
            return await self._fallback(window, primary_error=exc)

    async def _fallback(
        self, window: TimeRange, *, primary_error: CalendarError | None
    ) -> FetchResult:
        assert self._script is not None
        if _fallback_active.get():
            raise SourceUnavailable("Recursive calendar fallback refused", source=self.name)
        token = _fallback_active.set(True)
        try:
            return await self._script.fetch(window)
        except CalendarError as exc:
            if isinstance(primary_error, PermissionDenied) and not isinstance(
                exc, PermissionDenied
            ):
                raise PermissionDenied(
                    f"{primary_error.message}; fallback also failed: {exc.message}",
                    source=self.name,
                ) from exc
            raise
        finally:
            _fallback_active.reset(token)
