"""Unit tests for calsync.sources.script.ScriptFallbackProvider."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from zoneinfo import ZoneInfo

import pytest

from calsync.errors import PermissionDenied, SourceUnavailable
from calsync.models import EventSource, TimeRange
from calsync.sources.script import (
    EVENT_FIELDS,
    FIELD_SEP,
    RECORD_SEP,
    ScriptFallbackProvider,
    build_events_script,
    split_records,
)

pytestmark = pytest.mark.unit

_WINDOW = TimeRange(
    start=datetime(2026, 3, 10, tzinfo=UTC), end=datetime(2026, 3, 11, tzinfo=UTC)
)
_SPAWN = "calsync.sources.base.asyncio.create_subprocess_exec"


def _line(*fields: str) -> str:
    return FIELD_SEP.join(fields) + RECORD_SEP + "\n"


def _mock_proc(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    proc.returncode = returncode
    proc.wait = AsyncMock(return_value=returncode)
    return proc


def _provider(**kwargs) -> ScriptFallbackProvider:
    return ScriptFallbackProvider(UTC, platform="darwin", **kwargs)


class TestSplitRecords:
    def test_splits_fields_and_records(self) -> None:
        output = _line("u1", "Standup", "2026-03-10T09:00:00", "2026-03-10T09:30:00",
                       "false", "Work", "")
        output += _line("u2", "Lunch, with commas | pipes", "2026-03-10T12:00:00",
                        "2026-03-10T13:00:00", "false", "Home", "Cafe")
        records, errors = split_records(output, EVENT_FIELDS)
        assert errors == []
        assert records[1]["title"] == "Lunch, with commas | pipes"
        assert records[1]["location"] == "Cafe"

    def test_wrong_field_count_is_per_record_error(self) -> None:
        output = _line("u1", "Only", "three") + _line(
            "u2", "Fine", "2026-03-10T09:00:00", "2026-03-10T10:00:00", "false", "Work", ""
        )
        records, errors = split_records(output, EVENT_FIELDS)
        assert [r["uid"] for r in records] == ["u2"]
        assert errors[0].record_index == 0

    def test_empty_output(self) -> None:
        assert split_records("\n", EVENT_FIELDS) == ([], [])


class TestScript:
    def test_dates_built_component_wise_in_local_zone(self) -> None:
        tz = ZoneInfo("Asia/Tokyo")
        script = build_events_script(_WINDOW, tz)
        # 2026-03-10T00:00Z is 09:00 in Tokyo
        assert "set day of" in script
        assert "set time of startDate to 32400" in script
        assert "«class isot»" in script

    def test_calendar_names_are_quoted(self) -> None:
        script = build_events_script(_WINDOW, UTC, ['Team "A"'])
        assert '"Team \\"A\\""' in script


class TestFetch:
    async def test_fetch_runs_osascript(self) -> None:
        stdout = _line("u1", "Standup", "2026-03-10T09:00:00", "2026-03-10T09:30:00",
                       "false", "Work", "")
        proc = _mock_proc(stdout)
        with patch(_SPAWN, new_callable=AsyncMock, return_value=proc) as spawn:
            result = await _provider().fetch(_WINDOW)
        assert spawn.call_args.args == ("osascript", "-")
        assert result.records[0].source is EventSource.script_fallback
        assert result.records[0].calendar_name == "Work"

    async def test_permission_error_detected(self) -> None:
        proc = _mock_proc(stderr="execution error: Not authorized to send Apple events (-1743)",
                          returncode=1)
        with patch(_SPAWN, new_callable=AsyncMock, return_value=proc):
            with pytest.raises(PermissionDenied):
                await _provider().fetch(_WINDOW)

    async def test_other_failures_are_unavailable(self) -> None:
        proc = _mock_proc(stderr="syntax error", returncode=1)
        with patch(_SPAWN, new_callable=AsyncMock, return_value=proc):
            with pytest.raises(SourceUnavailable):
                await _provider().fetch(_WINDOW)

    async def test_unsupported_platform(self) -> None:
        provider = ScriptFallbackProvider(UTC, platform="linux")
        with pytest.raises(SourceUnavailable, match="not supported"):
            await provider.fetch(_WINDOW)


class TestDiscovery:
    async def test_discover_calendars(self) -> None:
        stdout = _line("Work", "true", "#ff0000") + _line("Holidays", "false", "")
        proc = _mock_proc(stdout)
        with patch(_SPAWN, new_callable=AsyncMock, return_value=proc):
            calendars = await _provider().discover_calendars()
        assert [(c.name, c.type, c.writable) for c in calendars] == [
            ("Work", "local", True),
            ("Holidays", "subscribed", False),
        ]
        assert calendars[0].color == "#ff0000"
        assert calendars[1].color is None

    def test_select_calendars_dedupes_and_strips(self) -> None:
        provider = _provider()
        provider.select_calendars([" Work ", "Work", "", "Home"])
        assert provider.calendars == ["Work", "Home"]
