"""CLI for ORA: run the availability sweep, serve the API, preview grids."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
import httpx
import uvicorn

from ora import __version__
from ora.api.deps import build_services
from ora.calendar.grid import build_availability, grid_to_documents
from ora.calendar.models import AvailabilityState, BusyInterval, parse_rfc3339
from ora.config import ConfigError, OraConfig, load_config
from ora.core.logging import configure_logging
from ora.store.base import DocumentStore

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> OraConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to ora.toml (defaults to ./ora.toml when present)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """ORA calendar availability service."""
    config = _load(config_path)
    configure_logging(config.logging.level, config.logging.format, config.logging.log_file)
    ctx.obj = config


async def _open_store(config: OraConfig, *, require_database: bool) -> DocumentStore:
    if config.database_url:
        from ora.store.postgres import PostgresDocumentStore

        return await PostgresDocumentStore.connect(config.database_url)
    if require_database:
        raise ConfigError("ORA_DATABASE_URL (or server.database_url) is required")
    from ora.store.memory import InMemoryDocumentStore

    logger.warning("No database configured; using the in-memory document store")
    return InMemoryDocumentStore()


async def _close_store(store: DocumentStore) -> None:
    close = getattr(store, "close", None)
    if close is not None:
        await close()


@cli.command()
@click.pass_obj
def sweep(config: OraConfig) -> None:
    """Sync availability for every account with granted consent."""
    try:
        summary = asyncio.run(_sweep(config))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    click.echo(summary.model_dump_json(indent=2))
    if summary.failed:
        sys.exit(2)


async def _sweep(config: OraConfig):
    store = await _open_store(config, require_database=True)
    try:
        async with httpx.AsyncClient(timeout=30.0) as http_client:
            services = build_services(config, store, http_client=http_client)
            return await services.orchestrator().run_sweep()
    finally:
        await _close_store(store)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to server.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to server.port)")
@click.pass_obj
def serve(config: OraConfig, host: str | None, port: int | None) -> None:
    """Serve the consent and sync HTTP API."""
    asyncio.run(_serve(config, host or config.host, port or config.port))


async def _serve(config: OraConfig, host: str, port: int) -> None:
    from ora.api.app import create_app

    store = await _open_store(config, require_database=False)
    try:
        app = create_app(build_services(config, store))
        server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None))
        logger.info("Serving ORA API on %s:%d", host, port)
        await server.serve()
    finally:
        await _close_store(store)


def _interval_from_json(item: dict) -> BusyInterval:
    def _boundary(value: str | None) -> datetime | date | None:
        if value is None:
            return None
        if len(value) == 10:
            return date.fromisoformat(value)
        return parse_rfc3339(value)

    return BusyInterval(
        start=_boundary(item["start"]),
        end=_boundary(item.get("end")),
        transparency=item.get("transparency"),
    )


@cli.command()
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--start", "start_day", required=True, help="First day, YYYY-MM-DD")
@click.option("--days", type=int, default=1, show_default=True)
@click.option("--slot-minutes", type=int, default=None, help="Slot size (defaults to config)")
@click.option("--tz", "tz_name", default=None, help="IANA time zone (defaults to config)")
@click.option("--json", "as_json", is_flag=True, help="Print the stored day documents instead")
@click.pass_obj
def grid(
    config: OraConfig,
    events_file: Path,
    start_day: str,
    days: int,
    slot_minutes: int | None,
    tz_name: str | None,
    as_json: bool,
) -> None:
    """Print the availability grid for a JSON list of busy intervals.

    Each interval is ``{"start": ..., "end": ...}`` with RFC 3339 times or
    ``YYYY-MM-DD`` dates for all-day blocks.  Busy slots print as ``#``.
    """
    try:
        tz = ZoneInfo(tz_name) if tz_name else config.calendar.tzinfo
        first_day = date.fromisoformat(start_day)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise click.BadParameter(str(exc)) from exc

    raw = json.loads(events_file.read_text())
    if not isinstance(raw, list):
        raise click.BadParameter("events file must hold a JSON list", param_hint="EVENTS_FILE")
    intervals = [_interval_from_json(item) for item in raw]

    result = build_availability(
        intervals,
        first_day,
        days,
        slot_minutes,
        tz=tz,
        defaults=config.calendar,
    )
    if as_json:
        click.echo(json.dumps(grid_to_documents(result), indent=2))
        return
    for key, slots in result.items():
        row = "".join("#" if s.state == AvailabilityState.BUSY else "." for s in slots)
        busy = sum(1 for s in slots if s.state == AvailabilityState.BUSY)
        click.echo(f"{key}  {row}  ({busy}/{len(slots)} busy)")
