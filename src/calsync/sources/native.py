"""NativeHelperProvider: reads the OS calendar store through a compiled helper.

Protocol: the request ``{"start": ISO, "end": ISO, "calendars": [...]}`` is
written to the helper's standard input; the helper prints a JSON array of
event records (``id``, ``title``, ``startDate``, ``endDate``, ``isAllDay``,
``calendar``, ``location``, ``notes``, ``attendees``, ``url``) on standard
output.  Calendar access was refused when the helper exits non-zero or reports
the ``PERMISSION_DENIED`` sentinel, either as the whole of standard output
or on standard error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path

from calsync.errors import ParseError, PermissionDenied
from calsync.models import EventSource, RawEvent, TimeRange
from calsync.sources.base import FetchResult, SourceProvider, run_process

logger = logging.getLogger(__name__)

PERMISSION_SENTINEL = "PERMISSION_DENIED"
DEFAULT_HELPER_TIMEOUT_SECONDS = 5.0


class NativeHelperProvider(SourceProvider):
    """Runs the native calendar helper; one invocation at a time."""

    def __init__(
        self,
        helper_path: str | Path,
        *,
        timeout_seconds: float = DEFAULT_HELPER_TIMEOUT_SECONDS,
        calendars: Sequence[str] | None = None,
    ) -> None:
        self._helper_path = str(helper_path)
        self._timeout = timeout_seconds
        self._calendars = list(calendars or [])
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return EventSource.native.value

    @property
    def source(self) -> EventSource:
        return EventSource.native

    @property
    def calendars(self) -> list[str]:
        return list(self._calendars)

    def select_calendars(self, names: Sequence[str]) -> None:
        self._calendars = [n for n in dict.fromkeys(n.strip() for n in names) if n]

    def _request(self, window: TimeRange) -> str:
        return json.dumps(
            {
                "start": window.start.isoformat(),
                "end": window.end.isoformat(),
                "calendars": self._calendars,
            }
        )

    async def fetch(self, window: TimeRange) -> FetchResult:
        async with self._lock:
            output = await run_process(
                [self._helper_path],
                stdin=self._request(window),
                timeout=self._timeout,
                source=self.name,
            )

        if output.stdout.strip() == PERMISSION_SENTINEL or PERMISSION_SENTINEL in output.stderr:
            raise PermissionDenied(
                "Calendar access was denied to the native helper", source=self.name
            )
        if output.returncode != 0:
            detail = output.stderr.strip() or f"exit code {output.returncode}"
            raise PermissionDenied(
                f"Native helper exited with code {output.returncode}: {detail}", source=self.name
            )
        return self.parse_output(output.stdout)

    def parse_output(self, stdout: str) -> FetchResult:
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ParseError(
                f"Native helper returned invalid JSON: {exc.msg}", source=self.name
            ) from exc
        if not isinstance(payload, list):
            raise ParseError("Native helper output is not a JSON array", source=self.name)

        result = FetchResult()
        for index, item in enumerate(payload):
            if not isinstance(item, dict):
                logger.warning("Skipping native record #%d: not an object", index)
                result.errors.append(
                    ParseError(
                        f"Record is not an object ({type(item).__name__})",
                        source=self.name,
                        record_index=index,
                    )
                )
                continue
            calendar = item.get("calendar")
            result.records.append(
                RawEvent(
                    source=EventSource.native,
                    payload=item,
                    calendar_name=calendar if isinstance(calendar, str) else None,
                )
            )
        return result
