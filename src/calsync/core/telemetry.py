"""OpenTelemetry initialization and span helpers for calendar aggregation."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calsync"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call; later calls reuse it.
    Otherwise the global no-op tracer is returned.

    Args:
        service_name: The service name reported to the tracing backend.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing it for service=%s", service_name)
        return trace.get_tracer(_TRACER_NAME)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(_TRACER_NAME)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def sync_span(run_id: str, trigger: str) -> Iterator[trace.Span]:
    """Span around one aggregation run (``calsync.sync``)."""
    with get_tracer().start_as_current_span("calsync.sync") as span:
        span.set_attribute("calsync.run_id", run_id)
        span.set_attribute("calsync.trigger", trigger)
        yield span


@contextmanager
def source_span(source: str) -> Iterator[trace.Span]:
    """Child span around one provider fetch (``calsync.source.fetch``).

    Exceptions are recorded on the span and re-raised.
    """
    with get_tracer().start_as_current_span(
        "calsync.source.fetch", record_exception=True, set_status_on_exception=True
    ) as span:
        span.set_attribute("calsync.source", source)
        yield span
