"""Canonical data model shared by every calsync component.

All caller-facing models serialize to camelCase JSON with ISO-8601 date
strings (``model_dump(mode="json", by_alias=True)``) so they can cross an IPC
or HTTP boundary unchanged.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class EventSource(StrEnum):
    """Origin of a calendar event."""

    native = "native"
    script_fallback = "script-fallback"
    file_import = "file-import"
    cloud = "cloud"


# Richer metadata wins when duplicates collapse.
SOURCE_PRIORITY: dict[EventSource, int] = {
    EventSource.cloud: 4,
    EventSource.native: 3,
    EventSource.script_fallback: 2,
    EventSource.file_import: 1,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


def _require_aware(value: datetime | None, info: ValidationInfo) -> datetime | None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{info.field_name} must be timezone-aware")
    return value


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


# ---------------------------------------------------------------------------
# Time windows
# ---------------------------------------------------------------------------


class TimeRange(_CamelModel):
    """Half-open ``[start, end)`` aggregation window."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _validate_aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info)

    @model_validator(mode="after")
    def _validate_order(self) -> TimeRange:
        if self.start > self.end:
            raise ValueError("start must be <= end")
        return self

    @classmethod
    def for_days(cls, tz: tzinfo, *, days: int = 1, now: datetime | None = None) -> TimeRange:
        """Window covering *days* local days starting at today's local midnight."""
        if days < 1:
            raise ValueError("days must be >= 1")
        current = (now or datetime.now(tz)).astimezone(tz)
        start = local_midnight(current.date(), tz)
        return cls(start=start, end=local_midnight(current.date() + timedelta(days=days), tz))

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Whether an event spanning ``[start, end)`` intersects this window.

        Zero-length events count when their instant falls inside the window.
        """
        if start == end:
            return self.start <= start < self.end
        return start < self.end and end > self.start


def local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawEvent:
    """One untouched record as returned by a source provider."""

    source: EventSource
    payload: dict[str, Any]
    calendar_name: str | None = None
    account_email: str | None = None


class Event(_CamelModel):
    """Canonical, immutable calendar event."""

    id: str
    title: str
    description: str | None = None
    start_date: datetime
    end_date: datetime
    is_all_day: bool = False
    location: str | None = None
    attendees: tuple[str, ...] = ()
    source: EventSource
    calendar_name: str | None = None
    source_account_email: str | None = None
    # Source-specific identity used for id derivation and duplicate detection.
    natural_key: str | None = Field(default=None, exclude=True)

    @field_validator("start_date", "end_date")
    @classmethod
    def _validate_aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info)

    @field_validator("description", "location", "calendar_name")
    @classmethod
    def _validate_optional_text(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _validate_invariants(self) -> Event:
        if self.start_date > self.end_date:
            raise ValueError("start_date must be <= end_date")
        if self.source_account_email is not None and self.source is not EventSource.cloud:
            raise ValueError("source_account_email is only valid for cloud events")
        return self


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().casefold()


class AccountUserInfo(_CamelModel):
    """Identity returned by the cloud user-info endpoint."""

    email: str
    display_name: str | None = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        value = value.strip()
        if not _EMAIL_PATTERN.match(value):
            raise ValueError("email must be a valid email address")
        return value

    @field_validator("display_name")
    @classmethod
    def _blank_display_name(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class AccountPublic(_CamelModel):
    """Account view that is safe to hand to any caller."""

    email: str
    display_name: str | None = None
    token_expiry: datetime | None = None
    connected_at: datetime


class Account(_CamelModel):
    """A connected cloud account. ``refresh_token`` never appears in reprs or logs."""

    email: str
    display_name: str | None = None
    refresh_token: SecretStr
    token_expiry: datetime | None = None
    connected_at: datetime

    @property
    def key(self) -> str:
        return normalize_email(self.email)

    def matches(self, email: str) -> bool:
        return self.key == normalize_email(email)

    def public(self) -> AccountPublic:
        return AccountPublic(
            email=self.email,
            display_name=self.display_name,
            token_expiry=self.token_expiry,
            connected_at=self.connected_at,
        )

    def to_storage(self) -> dict[str, Any]:
        """Serialize for the secure settings store, secret included."""
        data = self.model_dump(mode="json", by_alias=True)
        data["refreshToken"] = self.refresh_token.get_secret_value()
        return data


class AccountState(_CamelModel):
    accounts: list[AccountPublic]
    count: int
    max_accounts: int
    has_reached_limit: bool


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


class SyncStatus(_CamelModel):
    is_enabled: bool = False
    last_sync_time: datetime | None = None
    next_sync_time: datetime | None = None
    is_running: bool = False
    last_error: str | None = None


class SourceFailure(_CamelModel):
    """A per-source failure recorded on an aggregation result."""

    source: str
    error_type: str
    code: str
    message: str
    fatal: bool = True
    record_index: int | None = None


class SyncResult(_CamelModel):
    success: bool
    events_count: int = 0
    sync_time: datetime
    error: str | None = None
    message: str | None = None
    errors: list[SourceFailure] = Field(default_factory=list)


class AggregationResult(_CamelModel):
    events: list[Event]
    errors: list[SourceFailure] = Field(default_factory=list)
    fetched_at: datetime
    window: TimeRange
    from_cache: bool = False
    note: str | None = None


class CalendarMetadata(_CamelModel):
    """A calendar visible to the native calendar store."""

    name: str
    type: str = "unknown"
    color: str | None = None
    writable: bool = False


@dataclass(frozen=True)
class CacheEntry:
    """The last assembled event set. Replaced whole, never mutated."""

    events: tuple[Event, ...]
    fetched_at: datetime
    ttl: timedelta
    window: TimeRange
    errors: tuple[SourceFailure, ...] = field(default=())

    def is_fresh(self, now: datetime) -> bool:
        return now - self.fetched_at < self.ttl
