"""FileImportProvider: events from a user-imported ``.ics`` calendar file.

Paths are resolved (symlinks included) and must stay inside the allowed root;
files must carry the ``.ics`` suffix and be no larger than ``max_bytes``.  Only
the first ``max_bytes + 1`` bytes are ever read.  Recurring events contribute
their first occurrence only.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, tzinfo
from pathlib import Path
from typing import Any

from icalendar import Calendar

from calsync.errors import InvalidCalendarFile, ParseError, PathTraversalRejected
from calsync.models import EventSource, RawEvent, TimeRange, local_midnight
from calsync.sources.base import FetchResult, SourceProvider

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 10 * 1024 * 1024
ALLOWED_SUFFIXES = frozenset({".ics"})


def resolve_calendar_file(
    path: str | Path, allowed_root: str | Path, *, max_bytes: int = MAX_FILE_BYTES
) -> Path:
    """Validate *path* for import and return its resolved location.

    Raises
    ------
    PathTraversalRejected
        The resolved path lies outside *allowed_root*.
    InvalidCalendarFile
        Wrong suffix, missing, not a regular file, or larger than *max_bytes*.
    """
    root = Path(allowed_root).expanduser().resolve()
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if not resolved.is_relative_to(root):
        raise PathTraversalRejected(
            f"Calendar file path resolves outside the allowed directory: {path}",
            source=EventSource.file_import.value,
        )
    if resolved.suffix.lower() not in ALLOWED_SUFFIXES:
        raise InvalidCalendarFile(
            f"Only .ics calendar files are supported: {resolved.name}",
            source=EventSource.file_import.value,
        )
    if not resolved.is_file():
        raise InvalidCalendarFile(
            f"Calendar file not found: {resolved.name}", source=EventSource.file_import.value
        )
    size = resolved.stat().st_size
    if size > max_bytes:
        raise InvalidCalendarFile(
            f"Calendar file too large: {size} bytes (limit {max_bytes})",
            source=EventSource.file_import.value,
        )
    return resolved


def _read_bounded(path: Path, max_bytes: int) -> bytes:
    with path.open("rb") as fh:
        data = fh.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise InvalidCalendarFile(
            f"Calendar file too large (limit {max_bytes} bytes): {path.name}",
            source=EventSource.file_import.value,
        )
    return data


def _as_moment(value: Any, tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=tz)
    if isinstance(value, date):
        return local_midnight(value, tz)
    raise ParseError(f"Unsupported date value: {value!r}")


def _text(component: Any, key: str) -> str | None:
    value = component.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _attendees(component: Any) -> list[str]:
    raw = component.get("ATTENDEE")
    if raw is None:
        return []
    values = raw if isinstance(raw, list) else [raw]
    attendees = []
    for value in values:
        cn = value.params.get("CN") if hasattr(value, "params") else None
        address = str(value).strip()
        if address.lower().startswith("mailto:"):
            address = address[len("mailto:") :]
        label = address or (str(cn).strip() if cn else "")
        if label:
            attendees.append(label)
    return attendees


class FileImportProvider(SourceProvider):
    """One imported calendar file. Each file is its own failure domain."""

    def __init__(
        self,
        path: str | Path,
        allowed_root: str | Path,
        tz: tzinfo,
        *,
        max_bytes: int = MAX_FILE_BYTES,
    ) -> None:
        self._path = Path(path)
        self._allowed_root = Path(allowed_root)
        self._tz = tz
        self._max_bytes = max_bytes

    @property
    def name(self) -> str:
        return f"{EventSource.file_import.value}:{self._path.name}"

    @property
    def source(self) -> EventSource:
        return EventSource.file_import

    @property
    def path(self) -> Path:
        return self._path

    async def fetch(self, window: TimeRange) -> FetchResult:
        return await asyncio.to_thread(self._fetch_sync, window)

    def _fetch_sync(self, window: TimeRange) -> FetchResult:
        resolved = resolve_calendar_file(self._path, self._allowed_root, max_bytes=self._max_bytes)
        data = _read_bounded(resolved, self._max_bytes)
        try:
            calendar = Calendar.from_ical(data)
        except ValueError as exc:
            raise ParseError(
                f"Calendar file could not be parsed: {exc}", source=self.name
            ) from exc

        calendar_name = _text(calendar, "X-WR-CALNAME") or resolved.stem
        result = FetchResult()
        for index, component in enumerate(calendar.walk("VEVENT")):
            try:
                record = self._record(component)
                if record is None:
                    continue
                start = _as_moment(record["start"], self._tz)
                end = _as_moment(record["end"], self._tz) if record["end"] is not None else start
                if record["isAllDay"] and end == start:
                    end = start + timedelta(days=1)
                in_window = window.overlaps(start, end)
            except (ParseError, ValueError, TypeError) as exc:
                logger.warning("Skipping %s event #%d: %s", self.name, index, exc)
                result.errors.append(ParseError(str(exc), source=self.name, record_index=index))
                continue
            if not in_window:
                continue
            result.records.append(
                RawEvent(
                    source=EventSource.file_import, payload=record, calendar_name=calendar_name
                )
            )
        return result

    def _record(self, component: Any) -> dict[str, Any] | None:
        status = _text(component, "STATUS")
        if status and status.upper() == "CANCELLED":
            return None
        dtstart = component.get("DTSTART")
        if dtstart is None:
            raise ParseError("VEVENT has no DTSTART", source=self.name)
        start = dtstart.dt
        dtend = component.get("DTEND")
        end = dtend.dt if dtend is not None else None
        if end is None and component.get("DURATION") is not None:
            end = start + component.get("DURATION").dt
        is_all_day = isinstance(start, date) and not isinstance(start, datetime)
        return {
            "uid": _text(component, "UID"),
            "title": _text(component, "SUMMARY"),
            "start": start,
            "end": end,
            "isAllDay": is_all_day,
            "description": _text(component, "DESCRIPTION"),
            "location": _text(component, "LOCATION"),
            "attendees": _attendees(component),
        }
