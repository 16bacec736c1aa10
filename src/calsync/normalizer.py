"""EventNormalizer: converts raw source records into canonical :class:`Event` objects.

Each source hands back records in its own shape:

* native helper: ``{id, title, startDate, endDate, isAllDay, calendar,
  location, notes, attendees, url}`` with ISO-8601 date strings;
* script fallback: ``{uid, title, startDate, endDate, isAllDay, calendar,
  location}`` where dates are local ISO strings or long-form automation dates
  such as ``"Tuesday, 6 January 2026 at 09.30.00"``;
* file import: ``{uid, title, start, end, isAllDay, description, location,
  attendees}`` with ``date``/``datetime`` objects taken from the calendar file;
* cloud: the calendar API event resource (``start.dateTime`` or
  ``start.date``, ``summary``, ``attendees[].email`` ...).

Unparseable dates never silently become "now": the start boundary must parse
or the record is rejected with :class:`ParseError`.  A missing or unparseable
end boundary falls back to ``start`` (timed) or ``start + 1 day`` (all-day) and
the fallback is reported as a non-fatal parse issue.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any

from calsync.errors import ParseError
from calsync.models import Event, EventSource, RawEvent, local_midnight

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled event"
_ID_HASH_CHARS = 16

# Long-form dates as rendered by the OS automation facility.
_AUTOMATION_DATE_FORMATS = (
    "%A, %d %B %Y at %H.%M.%S",
    "%A, %d %B %Y at %H:%M:%S",
    "%A, %B %d, %Y at %I:%M:%S %p",
    "%A %d %B %Y at %H:%M:%S",
)


@dataclass(frozen=True)
class _Fields:
    title: str
    start: Any
    end: Any
    all_day: bool | None
    description: str | None = None
    location: str | None = None
    attendees: tuple[str, ...] = ()
    natural_key: str | None = None


@dataclass
class NormalizationBatch:
    """Events produced from one batch plus the record-level issues encountered."""

    events: list[Event] = field(default_factory=list)
    issues: list[ParseError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Date parsing
# ---------------------------------------------------------------------------


def parse_boundary(value: Any, tz: tzinfo) -> tuple[datetime, bool]:
    """Parse a date boundary into an aware datetime.

    Returns ``(moment, date_only)``.  Naive values are interpreted in *tz*.

    Raises
    ------
    ParseError
        If *value* is empty or in no recognised format.
    """
    if isinstance(value, datetime):
        return (value if value.tzinfo else value.replace(tzinfo=tz)), False
    if isinstance(value, date):
        return local_midnight(value, tz), True
    if isinstance(value, Mapping):
        # Cloud API boundary: {"dateTime": ..., "timeZone": ...} or {"date": ...}
        if value.get("dateTime"):
            return parse_boundary(str(value["dateTime"]), tz)
        if value.get("date"):
            return parse_boundary(str(value["date"]), tz)
        raise ParseError(f"Date object has neither dateTime nor date: {dict(value)!r}")
    if not isinstance(value, str) or not value.strip():
        raise ParseError(f"Missing or non-string date value: {value!r}")

    text = value.strip()
    if len(text) == 10:
        try:
            return local_midnight(date.fromisoformat(text), tz), True
        except ValueError:
            pass
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _AUTOMATION_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise ParseError(f"Unrecognised date format: {text!r}")
    return (parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)), False


def _coerce_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
        return None
    if isinstance(value, int):
        return bool(value)
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _attendee_list(values: Any) -> tuple[str, ...]:
    if not isinstance(values, list):
        return ()
    seen: dict[str, None] = {}
    for item in values:
        if isinstance(item, Mapping):
            label = _text(item.get("email")) or _text(item.get("displayName")) or _text(
                item.get("name")
            )
        else:
            label = _text(item)
        if label and label not in seen:
            seen[label] = None
    return tuple(seen)


# ---------------------------------------------------------------------------
# Per-source field extraction
# ---------------------------------------------------------------------------


def _extract_fields(raw: RawEvent) -> _Fields:
    p = raw.payload
    if raw.source is EventSource.cloud:
        start = p.get("start") or {}
        end = p.get("end") or {}
        date_only = isinstance(start, Mapping) and bool(start.get("date")) and not start.get(
            "dateTime"
        )
        key = _text(p.get("iCalUID")) or _text(p.get("id"))
        return _Fields(
            title=_text(p.get("summary")) or UNTITLED_EVENT,
            start=start,
            end=end or None,
            all_day=date_only,
            description=_text(p.get("description")),
            location=_text(p.get("location")),
            attendees=_attendee_list(p.get("attendees")),
            natural_key=key,
        )
    if raw.source is EventSource.file_import:
        return _Fields(
            title=_text(p.get("title")) or UNTITLED_EVENT,
            start=p.get("start"),
            end=p.get("end"),
            all_day=_coerce_bool(p.get("isAllDay")),
            description=_text(p.get("description")),
            location=_text(p.get("location")),
            attendees=_attendee_list(p.get("attendees")),
            natural_key=_text(p.get("uid")),
        )
    # native helper and script fallback share the same record vocabulary
    return _Fields(
        title=_text(p.get("title")) or UNTITLED_EVENT,
        start=p.get("startDate"),
        end=p.get("endDate"),
        all_day=_coerce_bool(p.get("isAllDay")),
        description=_text(p.get("notes")) or _text(p.get("description")),
        location=_text(p.get("location")),
        attendees=_attendee_list(p.get("attendees")),
        natural_key=_text(p.get("id")) or _text(p.get("uid")),
    )


def _looks_all_day(start: datetime, end: datetime, tz: tzinfo) -> bool:
    """Duration-based all-day detection for sources without an explicit marker."""
    duration = end - start
    if duration < timedelta(days=1) or duration % timedelta(days=1):
        return False
    return start.astimezone(tz).timetz().replace(tzinfo=None) == time.min


def _all_day_bounds(start: datetime, end: datetime | None, tz: tzinfo) -> tuple[datetime, datetime]:
    start_day = start.astimezone(tz).date()
    if end is None:
        end_day = start_day + timedelta(days=1)
    else:
        local_end = end.astimezone(tz)
        end_day = local_end.date()
        # inclusive ends such as 23:59:59 roll over to the next local midnight
        if local_end.time() != time.min:
            end_day += timedelta(days=1)
        end_day = max(end_day, start_day + timedelta(days=1))
    return local_midnight(start_day, tz), local_midnight(end_day, tz)


def _stable_id(source: EventSource, basis: str) -> str:
    digest = hashlib.sha1(basis.encode("utf-8"), usedforsecurity=False).hexdigest()
    return f"{source.value}-{digest[:_ID_HASH_CHARS]}"


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class EventNormalizer:
    """Turns :class:`RawEvent` records into canonical events in a fixed time zone.

    ``normalize`` is pure: the same raw record always yields the same event
    (same id).  ``normalize_batch`` additionally guarantees id uniqueness
    within the batch by suffixing colliding ids ``-2``, ``-3`` ... in input
    order.
    """

    def __init__(self, tz: tzinfo) -> None:
        self._tz = tz

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def normalize(self, raw: RawEvent) -> tuple[Event, list[ParseError]]:
        """Normalize one record; returns the event and any non-fatal issues.

        Raises :class:`ParseError` when the record cannot produce a valid event.
        """
        source_label = raw.source.value
        if not isinstance(raw.payload, Mapping):
            raise ParseError("Record is not an object", source=source_label, record=raw.payload)
        fields = _extract_fields(raw)
        issues: list[ParseError] = []

        try:
            start, start_date_only = parse_boundary(fields.start, self._tz)
        except ParseError as exc:
            raise ParseError(
                f"Unparseable start date: {exc.message}", source=source_label
            ) from exc

        end: datetime | None
        end_date_only = start_date_only
        if fields.end is None or fields.end == "":
            end = None
            issues.append(ParseError("Missing end date; defaulted", source=source_label))
        else:
            try:
                end, end_date_only = parse_boundary(fields.end, self._tz)
            except ParseError as exc:
                end = None
                issues.append(
                    ParseError(
                        f"Unparseable end date; defaulted: {exc.message}", source=source_label
                    )
                )
        if end is not None and end < start:
            issues.append(ParseError("End precedes start; defaulted", source=source_label))
            end = None

        if fields.all_day is not None:
            is_all_day = fields.all_day
        elif start_date_only and end_date_only:
            is_all_day = True
        else:
            is_all_day = end is not None and _looks_all_day(start, end, self._tz)

        if is_all_day:
            start, end = _all_day_bounds(start, end, self._tz)
        else:
            start = start.astimezone(self._tz)
            end = start if end is None else end.astimezone(self._tz)

        natural_key = None
        if fields.natural_key:
            if raw.source is EventSource.cloud:
                # the same cloud event appears once per calendar it is shared into
                natural_key = f"{raw.account_email or ''}:{fields.natural_key}"
            else:
                natural_key = f"{raw.calendar_name or ''}:{fields.natural_key}"
        basis = natural_key or "|".join(
            [fields.title, start.isoformat(), end.isoformat(), raw.calendar_name or ""]
        )

        event = Event(
            id=_stable_id(raw.source, f"{raw.account_email or ''}|{basis}"),
            title=fields.title,
            description=fields.description,
            start_date=start,
            end_date=end,
            is_all_day=is_all_day,
            location=fields.location,
            attendees=fields.attendees,
            source=raw.source,
            calendar_name=raw.calendar_name,
            source_account_email=raw.account_email if raw.source is EventSource.cloud else None,
            natural_key=natural_key,
        )
        return event, issues

    def normalize_batch(
        self, raws: Iterable[RawEvent], *, allocator: IdAllocator | None = None
    ) -> NormalizationBatch:
        """Normalize many records, skipping (and reporting) the ones that fail."""
        allocator = allocator or IdAllocator()
        batch = NormalizationBatch()
        for index, raw in enumerate(raws):
            try:
                event, issues = self.normalize(raw)
            except ParseError as exc:
                exc.record_index = index
                logger.warning(
                    "Skipping unparseable %s record #%d: %s", raw.source.value, index, exc.message
                )
                batch.issues.append(exc)
                continue
            except ValueError as exc:
                logger.warning("Skipping invalid %s record #%d: %s", raw.source.value, index, exc)
                batch.issues.append(
                    ParseError(str(exc), source=raw.source.value, record_index=index)
                )
                continue
            for issue in issues:
                issue.record_index = index
                logger.debug("%s record #%d: %s", raw.source.value, index, issue.message)
            batch.issues.extend(issues)
            batch.events.append(allocator.assign(event))
        return batch


class IdAllocator:
    """Hands out batch-unique ids, suffixing collisions deterministically."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}

    def assign(self, event: Event) -> Event:
        seen = self._counts.get(event.id, 0)
        self._counts[event.id] = seen + 1
        if seen == 0:
            return event
        candidate = f"{event.id}-{seen + 1}"
        while candidate in self._counts:
            seen += 1
            candidate = f"{event.id}-{seen + 1}"
        self._counts[candidate] = 1
        return event.model_copy(update={"id": candidate})
