"""Unit tests for the calsync OTel metrics instruments.

Covers:
- init_metrics: no-op when OTEL_EXPORTER_OTLP_ENDPOINT is not set
- recording helpers emit the expected instruments and attributes
- cache lookups and aggregation runs are recorded end to end
"""

from __future__ import annotations

from datetime import UTC, timedelta
from typing import Any

import pytest
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

import calsync.core.metrics as _metrics_mod
from calsync.aggregator import CalendarAggregator
from calsync.cache import AggregationCache
from calsync.core.metrics import SyncMetrics, init_metrics
from calsync.errors import SourceUnavailable
from calsync.normalizer import EventNormalizer

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider so each test can install its own."""
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


def _collect_metrics(reader: InMemoryMetricReader) -> dict[str, Any]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, Any] = {}
    data = reader.get_metrics_data()
    if data is None:
        return result
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = list(metric.data.data_points)
    return result


@pytest.fixture
def reader(monkeypatch):
    _reset_metrics_global_state()
    in_memory = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[in_memory])
    metrics.set_meter_provider(provider)
    monkeypatch.setattr(_metrics_mod, "_metrics", SyncMetrics())
    yield in_memory
    provider.shutdown()
    _reset_metrics_global_state()


# ---------------------------------------------------------------------------
# init_metrics
# ---------------------------------------------------------------------------


class TestInitMetrics:
    def test_returns_meter_when_endpoint_not_set(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        assert init_metrics("calsync-test") is not None

    def test_recording_without_provider_is_noop(self) -> None:
        SyncMetrics().cache_lookups.add(1, {"result": "hit"})


# ---------------------------------------------------------------------------
# Recording helpers
# ---------------------------------------------------------------------------


class TestRecording:
    def test_cache_lookups_labelled(self, reader) -> None:
        _metrics_mod.record_cache_lookup(True)
        _metrics_mod.record_cache_lookup(False)
        _metrics_mod.record_cache_lookup(False)

        points = _collect_metrics(reader)["calsync.cache.lookups_total"]
        by_result = {p.attributes["result"]: p.value for p in points}
        assert by_result == {"hit": 1, "miss": 2}

    def test_zero_events_not_recorded(self, reader) -> None:
        _metrics_mod.record_events_emitted(0)
        assert "calsync.events.emitted_total" not in _collect_metrics(reader)

    def test_source_failure_attributes(self, reader) -> None:
        _metrics_mod.record_source_failure("native", "PERMISSION_DENIED")
        (point,) = _collect_metrics(reader)["calsync.source.failures_total"]
        assert dict(point.attributes) == {"source": "native", "code": "PERMISSION_DENIED"}


class TestAggregationMetrics:
    async def test_partial_sync_records_everything(self, reader, stubs, window) -> None:
        nine = stubs.DAY_START + timedelta(hours=9)
        providers = [
            stubs.Provider("native", error=SourceUnavailable("no helper")),
            stubs.Provider("native-2", records=[stubs.native_record("n1", "Standup", nine)]),
        ]
        aggregator = CalendarAggregator(
            lambda: providers, EventNormalizer(UTC), AggregationCache()
        )
        await aggregator.sync(window)

        collected = _collect_metrics(reader)
        (duration,) = collected["calsync.sync.duration_ms"]
        assert duration.attributes["outcome"] == "success"
        assert collected["calsync.events.emitted_total"][0].value == 1
        (failure,) = collected["calsync.source.failures_total"]
        assert failure.attributes["code"] == "SOURCE_UNAVAILABLE"
