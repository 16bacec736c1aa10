"""CLI for calsync: inspect aggregated calendars and run the API server."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from calsync import __version__
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.logging import configure_logging
from calsync.core.metrics import init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.errors import CalendarError
from calsync.models import TimeRange
from calsync.service import CalendarService

logger = logging.getLogger(__name__)

SERVICE_NAME = "calsync"

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calsync.toml (defaults to ./calsync.toml when present)",
)


def _load(config_path: Path | None) -> CalsyncConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    return config


async def _with_service(config: CalsyncConfig, action):
    service = CalendarService.from_config(config)
    try:
        return await action(service)
    finally:
        await service.shutdown()


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """calsync: unified, deduplicated view over native, file and cloud calendars."""


@cli.command()
@_config_option
@click.option("--days", type=click.IntRange(min=1), default=None, help="Days from local midnight")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
def events(config_path: Path | None, days: int | None, as_json: bool) -> None:
    """Aggregate events from every configured source and print them."""
    config = _load(config_path)
    window = TimeRange.for_days(config.tzinfo(), days=days or config.sync.window_days)

    try:
        result = asyncio.run(
            _with_service(config, lambda service: service.get_aggregated_events(window))
        )
    except CalendarError as exc:
        click.echo(f"{exc.code}: {exc.message}", err=True)
        sys.exit(2)

    if as_json:
        _echo_json(result.model_dump(mode="json", by_alias=True))
        return

    if not result.events:
        click.echo(result.note or "No events.")
    for event in result.events:
        when = (
            event.start_date.strftime("%Y-%m-%d") + " (all day)"
            if event.is_all_day
            else f"{event.start_date:%Y-%m-%d %H:%M}-{event.end_date:%H:%M}"
        )
        click.echo(f"{when:<28} {event.title}  [{event.source.value}]")
    for failure in result.errors:
        label = "error" if failure.fatal else "skipped"
        click.echo(f"{label}: {failure.source}: {failure.code}: {failure.message}", err=True)


@cli.command()
@_config_option
def status(config_path: Path | None) -> None:
    """Show schedule and connected-account state."""
    config = _load(config_path)

    async def _status(service: CalendarService) -> dict:
        accounts = await service.get_account_state()
        return {
            "sync": service.get_sync_status().model_dump(mode="json", by_alias=True),
            "nextScheduledSync": service.scheduler.next_fire_time().isoformat(),
            "cloudConfigured": service.cloud_configured,
            "accounts": accounts.model_dump(mode="json", by_alias=True),
            "calendarFiles": [str(p) for p in service.calendar_files],
        }

    _echo_json(asyncio.run(_with_service(config, _status)))


@cli.command()
@_config_option
def calendars(config_path: Path | None) -> None:
    """List calendars visible to the native calendar store."""
    config = _load(config_path)
    try:
        found = asyncio.run(
            _with_service(config, lambda service: service.discover_native_calendars())
        )
    except CalendarError as exc:
        click.echo(f"{exc.code}: {exc.message}", err=True)
        sys.exit(2)
    for calendar in found:
        flag = "rw" if calendar.writable else "ro"
        click.echo(f"{calendar.name:<32} {calendar.type:<11} {flag}")


@cli.command()
@_config_option
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8080, show_default=True)
def serve(config_path: Path | None, host: str, port: int) -> None:
    """Run the HTTP API with the background sync scheduler."""
    import uvicorn

    from calsync.api.app import create_app

    config = _load(config_path)
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)
    app = create_app(CalendarService.from_config(config))
    logger.info("Starting calsync API on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None)
