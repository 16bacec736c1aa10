"""Shared test fixtures for the calsync test suite."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from calsync.errors import CalendarError
from calsync.models import EventSource, RawEvent, TimeRange
from calsync.sources.base import FetchResult, SourceProvider

DAY_START = datetime(2026, 3, 10, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock for TTL and scheduling tests."""

    def __init__(self, start: datetime = DAY_START + timedelta(hours=9)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def tz():
    return UTC


@pytest.fixture
def window() -> TimeRange:
    return TimeRange(start=DAY_START, end=DAY_START + timedelta(days=1))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class StubProvider(SourceProvider):
    """In-memory provider returning canned records or raising a canned error."""

    def __init__(
        self,
        name: str,
        source: EventSource = EventSource.native,
        *,
        records: list[RawEvent] | None = None,
        errors: list[CalendarError] | None = None,
        error: BaseException | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self._name = name
        self._source = source
        self.records = records or []
        self.errors = errors or []
        self.error = error
        self.gate = gate
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def source(self) -> EventSource:
        return self._source

    async def fetch(self, window: TimeRange) -> FetchResult:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return FetchResult(records=list(self.records), errors=list(self.errors))


def native_record(
    event_id: str, title: str, start: datetime, minutes: int = 30, calendar: str = "Work"
) -> RawEvent:
    return RawEvent(
        source=EventSource.native,
        payload={
            "id": event_id,
            "title": title,
            "startDate": start.isoformat(),
            "endDate": (start + timedelta(minutes=minutes)).isoformat(),
            "isAllDay": False,
        },
        calendar_name=calendar,
    )


def cloud_record(
    event_id: str, title: str, start: datetime, minutes: int = 30, email: str = "a@example.com"
) -> RawEvent:
    return RawEvent(
        source=EventSource.cloud,
        payload={
            "id": event_id,
            "summary": title,
            "start": {"dateTime": start.isoformat()},
            "end": {"dateTime": (start + timedelta(minutes=minutes)).isoformat()},
        },
        calendar_name="primary",
        account_email=email,
    )


@pytest.fixture
def stubs():
    """Namespace of stub helpers so test modules need not import conftest."""
    return SimpleNamespace(
        Provider=StubProvider,
        native_record=native_record,
        cloud_record=cloud_record,
        DAY_START=DAY_START,
        FakeClock=FakeClock,
    )
