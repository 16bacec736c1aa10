"""ScriptFallbackProvider: queries the native calendar store through ``osascript``.

Used when the compiled helper is missing, broken or denied.  The generated
script prints one record per event with fields joined by :data:`FIELD_SEP`
and records terminated by :data:`RECORD_SEP`; both are multi-character
markers that do not occur in natural text.  A record whose field count is
wrong (for example because a field contained a marker anyway) is reported
as a :class:`ParseError` for that record only.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from collections.abc import Sequence
from datetime import datetime, tzinfo

from calsync.errors import ParseError, PermissionDenied, SourceUnavailable
from calsync.models import CalendarMetadata, EventSource, RawEvent, TimeRange
from calsync.sources.base import FetchResult, SourceProvider, run_process

logger = logging.getLogger(__name__)

FIELD_SEP = "<|~|>"
RECORD_SEP = "<|~~|>"
EVENT_FIELDS = ("uid", "title", "startDate", "endDate", "isAllDay", "calendar", "location")
CALENDAR_FIELDS = ("name", "writable", "color")

DEFAULT_SCRIPT_TIMEOUT_SECONDS = 30.0
DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 10.0

_PERMISSION_PATTERN = re.compile(
    r"not allowed|permission|access denied|not authorized|-1743", re.IGNORECASE
)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _date_statements(variable: str, moment: datetime, tz: tzinfo) -> str:
    """Build a locale-independent date value component by component."""
    local = moment.astimezone(tz)
    seconds = local.hour * 3600 + local.minute * 60 + local.second
    return "\n".join(
        [
            f"set {variable} to current date",
            f"set day of {variable} to 1",
            f"set year of {variable} to {local.year}",
            f"set month of {variable} to {local.month}",
            f"set day of {variable} to {local.day}",
            f"set time of {variable} to {seconds}",
        ]
    )


def build_events_script(window: TimeRange, tz: tzinfo, calendars: Sequence[str] = ()) -> str:
    if calendars:
        names = ", ".join(_quote(name) for name in calendars)
        select = (
            f"set wanted to {{{names}}}\n"
            "    set targetCals to {}\n"
            "    repeat with c in every calendar\n"
            "        if wanted contains (name of c as string) then set end of targetCals to c\n"
            "    end repeat"
        )
    else:
        select = "set targetCals to every calendar"

    return f"""
{_date_statements("startDate", window.start, tz)}
{_date_statements("endDate", window.end, tz)}
tell application "Calendar"
    set fieldSep to "{FIELD_SEP}"
    set recSep to "{RECORD_SEP}"
    set output to ""
    {select}
    repeat with c in targetCals
        set calName to name of c as string
        set evts to (every event of c whose start date < endDate and end date > startDate)
        repeat with e in evts
            set loc to ""
            try
                set loc to location of e
                if loc is missing value then set loc to ""
            end try
            set allDay to "false"
            if allday event of e then set allDay to "true"
            set sIso to (start date of e) as «class isot» as string
            set eIso to (end date of e) as «class isot» as string
            set output to output & (uid of e) & fieldSep & (summary of e) & fieldSep & sIso ¬
                & fieldSep & eIso & fieldSep & allDay & fieldSep & calName & fieldSep & loc & recSep
        end repeat
    end repeat
    return output
end tell
"""


DISCOVERY_SCRIPT = f"""
tell application "Calendar"
    set output to ""
    repeat with c in calendars
        set calColor to ""
        try
            set calColor to (color of c) as string
        end try
        set output to output & (name of c) & "{FIELD_SEP}" & (writable of c) ¬
            & "{FIELD_SEP}" & calColor & "{RECORD_SEP}"
    end repeat
    return output
end tell
"""


def split_records(
    output: str, field_names: Sequence[str]
) -> tuple[list[dict[str, str]], list[ParseError]]:
    """Split delimited script output, validating each record's field count."""
    records: list[dict[str, str]] = []
    errors: list[ParseError] = []
    chunks = [chunk.strip("\r\n") for chunk in output.split(RECORD_SEP)]
    for index, chunk in enumerate(c for c in chunks if c.strip()):
        fields = chunk.split(FIELD_SEP)
        if len(fields) != len(field_names):
            errors.append(
                ParseError(
                    f"Expected {len(field_names)} fields, got {len(fields)}",
                    source=EventSource.script_fallback.value,
                    record_index=index,
                )
            )
            continue
        records.append(
            {name: value.strip() for name, value in zip(field_names, fields, strict=True)}
        )
    return records, errors


class ScriptFallbackProvider(SourceProvider):
    """Reads native calendars via the OS automation facility; one invocation at a time."""

    def __init__(
        self,
        tz: tzinfo,
        *,
        calendars: Sequence[str] | None = None,
        timeout_seconds: float = DEFAULT_SCRIPT_TIMEOUT_SECONDS,
        discovery_timeout_seconds: float = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
        executable: str = "osascript",
        platform: str = sys.platform,
    ) -> None:
        self._tz = tz
        self._calendars = list(calendars or [])
        self._timeout = timeout_seconds
        self._discovery_timeout = discovery_timeout_seconds
        self._executable = executable
        self._platform = platform
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return EventSource.script_fallback.value

    @property
    def source(self) -> EventSource:
        return EventSource.script_fallback

    @property
    def calendars(self) -> list[str]:
        return list(self._calendars)

    def select_calendars(self, names: Sequence[str]) -> None:
        """Limit fetches to the named calendars; an empty selection means all."""
        self._calendars = [n for n in dict.fromkeys(n.strip() for n in names) if n]

    async def _run(self, script: str, timeout: float) -> str:
        if self._platform != "darwin":
            raise SourceUnavailable(
                f"Script fallback is not supported on {self._platform}", source=self.name
            )
        async with self._lock:
            output = await run_process(
                [self._executable, "-"], stdin=script, timeout=timeout, source=self.name
            )
        if output.returncode != 0:
            detail = " ".join(output.stderr.split())[:200] or f"exit code {output.returncode}"
            if _PERMISSION_PATTERN.search(output.stderr):
                raise PermissionDenied(
                    f"Calendar automation access was denied: {detail}", source=self.name
                )
            raise SourceUnavailable(f"Calendar script failed: {detail}", source=self.name)
        return output.stdout

    async def fetch(self, window: TimeRange) -> FetchResult:
        stdout = await self._run(
            build_events_script(window, self._tz, self._calendars), self._timeout
        )
        records, errors = split_records(stdout, EVENT_FIELDS)
        for error in errors:
            logger.warning("Skipping script record #%s: %s", error.record_index, error.message)
        return FetchResult(
            records=[
                RawEvent(
                    source=EventSource.script_fallback,
                    payload=record,
                    calendar_name=record["calendar"] or None,
                )
                for record in records
            ],
            errors=errors,
        )

    async def discover_calendars(self) -> list[CalendarMetadata]:
        stdout = await self._run(DISCOVERY_SCRIPT, self._discovery_timeout)
        records, errors = split_records(stdout, CALENDAR_FIELDS)
        if errors:
            logger.warning("Ignored %d malformed calendar entries during discovery", len(errors))
        calendars = []
        for record in records:
            writable = record["writable"].lower() == "true"
            calendars.append(
                CalendarMetadata(
                    name=record["name"],
                    type="local" if writable else "subscribed",
                    color=record["color"] or None,
                    writable=writable,
                )
            )
        return calendars
