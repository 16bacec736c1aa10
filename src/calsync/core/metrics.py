"""OpenTelemetry metrics instruments for calendar aggregation.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around and recording before
``init_metrics`` is a silent no-op.

Instruments
-----------
  calsync.sync.duration_ms          Histogram  (label: outcome=success|failure|cancelled)
      End-to-end aggregation duration in milliseconds.

  calsync.source.failures_total     Counter    (labels: source, code)
      Per-source failures recorded on aggregation results.

  calsync.cache.lookups_total       Counter    (label: result=hit|miss)
      AggregationCache reads.

  calsync.events.emitted_total      Counter
      Deduplicated events returned by successful aggregations.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "calsync"


def init_metrics(service_name: str) -> metrics.Meter:
    """Install an OTLP-exporting MeterProvider when OTEL_EXPORTER_OTLP_ENDPOINT is set.

    Otherwise the global no-op MeterProvider stays in place.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


class SyncMetrics:
    """Lazily-created instruments shared by the cache and the aggregator."""

    def __init__(self) -> None:
        self._sync_duration: metrics.Histogram | None = None
        self._source_failures: metrics.Counter | None = None
        self._cache_lookups: metrics.Counter | None = None
        self._events_emitted: metrics.Counter | None = None

    @property
    def sync_duration(self) -> metrics.Histogram:
        if self._sync_duration is None:
            self._sync_duration = get_meter().create_histogram(
                name="calsync.sync.duration_ms",
                description="End-to-end calendar aggregation duration in milliseconds",
                unit="ms",
            )
        return self._sync_duration

    @property
    def source_failures(self) -> metrics.Counter:
        if self._source_failures is None:
            self._source_failures = get_meter().create_counter(
                name="calsync.source.failures_total",
                description="Per-source failures recorded during aggregation",
                unit="failures",
            )
        return self._source_failures

    @property
    def cache_lookups(self) -> metrics.Counter:
        if self._cache_lookups is None:
            self._cache_lookups = get_meter().create_counter(
                name="calsync.cache.lookups_total",
                description="Aggregation cache reads by result",
                unit="lookups",
            )
        return self._cache_lookups

    @property
    def events_emitted(self) -> metrics.Counter:
        if self._events_emitted is None:
            self._events_emitted = get_meter().create_counter(
                name="calsync.events.emitted_total",
                description="Deduplicated events returned by successful aggregations",
                unit="events",
            )
        return self._events_emitted


_metrics = SyncMetrics()


def record_sync_duration(duration_ms: float, outcome: str) -> None:
    _metrics.sync_duration.record(duration_ms, {"outcome": outcome})


def record_source_failure(source: str, code: str) -> None:
    _metrics.source_failures.add(1, {"source": source, "code": code})


def record_cache_lookup(hit: bool) -> None:
    _metrics.cache_lookups.add(1, {"result": "hit" if hit else "miss"})


def record_events_emitted(count: int) -> None:
    if count:
        _metrics.events_emitted.add(count)
