"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from calsync.core.logging import (
    _NOISE_LOGGERS,
    _sync_run_context,
    add_otel_context,
    add_sync_run_context,
    configure_logging,
    get_sync_run,
    sync_run_context,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and sync-run context between tests."""
    token = _sync_run_context.set(None)
    yield
    _sync_run_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


# ---------------------------------------------------------------------------
# Sync-run context
# ---------------------------------------------------------------------------


class TestSyncRunContext:
    def test_default_is_none(self):
        assert get_sync_run() is None

    def test_scoped_to_block(self):
        with sync_run_context("run-1"):
            assert get_sync_run() == "run-1"
            with sync_run_context("run-2"):
                assert get_sync_run() == "run-2"
            assert get_sync_run() == "run-1"
        assert get_sync_run() is None

    def test_processor_injects_run_id(self):
        with sync_run_context("abc123"):
            result = add_sync_run_context(None, "info", {"event": "test"})
        assert result["sync_run"] == "abc123"

    def test_processor_leaves_event_alone_outside_run(self):
        result = add_sync_run_context(None, "info", {"event": "test"})
        assert "sync_run" not in result


# ---------------------------------------------------------------------------
# add_otel_context processor
# ---------------------------------------------------------------------------


class TestAddOtelContext:
    def test_no_ids_without_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert "trace_id" not in result

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
            assert result["trace_id"] != "0" * 32
        provider.shutdown()


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_noise_loggers_suppressed(self):
        configure_logging()
        assert logging.getLogger("httpx").level >= logging.WARNING
        assert logging.getLogger("uvicorn.access").level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG


class TestLogFiles:
    def test_files_created(self, tmp_path: Path):
        configure_logging(log_root=tmp_path / "logs")
        root = logging.getLogger()
        files = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        assert len(files) == 1
        assert files[0].baseFilename.endswith("calsync.log")
        http = [
            h for h in logging.getLogger("httpx").handlers if isinstance(h, logging.FileHandler)
        ]
        assert http[0].baseFilename.endswith("http.log")

    def test_file_lines_are_json_with_run_id(self, tmp_path: Path):
        configure_logging(log_root=tmp_path)
        with sync_run_context("run-42"):
            logging.getLogger("calsync.test").warning("sync finished")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "calsync.log").read_text().strip().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "sync finished"
        assert record["sync_run"] == "run-42"
        assert record["level"] == "warning"
        assert record["logger"] == "calsync.test"
