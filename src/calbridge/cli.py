"""CLI for calbridge: run the API and poke at integrations from a shell."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import click
import httpx

from calbridge.api.deps import Services, build_services
from calbridge.config import AppConfig, ConfigError, load_config
from calbridge.connections.store import PostgresConnectionStore
from calbridge.core.logging import configure_logging
from calbridge.crypto import SecretCodec
from calbridge.db import Database
from calbridge.errors import IntegrationError, build_error_payload

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Console logging for one-shot commands; ``serve`` reconfigures from the config file."""
    configure_logging(level="INFO", fmt="text")


def _load(config_path: Path | None) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _parse_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value}") from None


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@asynccontextmanager
async def _services(config: AppConfig) -> AsyncIterator[Services]:
    """Open the PostgreSQL store and an HTTP client for a one-shot command."""
    database = Database.from_env(config.db_name)
    pool = await database.connect()
    try:
        store = PostgresConnectionStore(pool, codec=SecretCodec.from_env())
        await store.ensure_schema()
        async with httpx.AsyncClient(timeout=config.calendar.request_timeout_s) as client:
            yield build_services(config, store, client)
    finally:
        await database.close()


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calbridge.toml (defaults to $CALBRIDGE_CONFIG or ./calbridge.toml)",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """calbridge: calendar and messaging integration service."""
    _configure_logging()


@cli.command()
@config_option
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8200, show_default=True, help="Bind port")
def serve(config_path: Path | None, host: str, port: int) -> None:
    """Run the HTTP API (webhooks, integrations, calendar)."""
    config = _load(config_path)
    click.echo(f"Starting calbridge on http://{host}:{port}")
    asyncio.run(_serve(config, host, port))


async def _serve(config: AppConfig, host: str, port: int) -> None:
    import uvicorn

    from calbridge.api.app import create_app

    server = uvicorn.Server(
        uvicorn.Config(create_app(config), host=host, port=port, log_config=None)
    )
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        server.should_exit = True

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    await server.serve()


@cli.command("init-db")
@config_option
def init_db(config_path: Path | None) -> None:
    """Create the database (if missing) and the connection table."""
    config = _load(config_path)
    asyncio.run(_init_db(config))
    click.echo(f"Database {config.db_name} is ready")


async def _init_db(config: AppConfig) -> None:
    database = Database.from_env(config.db_name)
    await database.provision()
    pool = await database.connect()
    try:
        await PostgresConnectionStore(pool).ensure_schema()
    finally:
        await database.close()


@cli.command("generate-key")
def generate_key() -> None:
    """Print a fresh value for ENCRYPTION_KEY."""
    click.echo(SecretCodec.generate_key())


# ---------------------------------------------------------------------------
# integrations
# ---------------------------------------------------------------------------


@cli.group()
def integrations() -> None:
    """Inspect and health-check provider connections."""


@integrations.command("list")
@config_option
def integrations_list(config_path: Path | None) -> None:
    config = _load(config_path)

    async def _run() -> list[dict]:
        async with _services(config) as services:
            return [c.public_view() for c in await services.integrations.list()]

    rows = asyncio.run(_run())
    click.echo(f"{'Provider':<18} {'Status':<14} {'Account':<30} {'Last error'}")
    click.echo("-" * 80)
    for row in rows:
        account = row["external_account_label"] or "-"
        click.echo(
            f"{row['provider']:<18} {row['status']:<14} {account:<30} {row['last_error'] or ''}"
        )


@integrations.command("test")
@click.argument("provider")
@config_option
def integrations_test(provider: str, config_path: Path | None) -> None:
    """Run the provider health check and record the result."""
    config = _load(config_path)

    async def _run() -> dict:
        async with _services(config) as services:
            connection = await services.integrations.test(provider.replace("-", "_"))
            return connection.public_view()

    try:
        view = asyncio.run(_run())
    except (IntegrationError, KeyError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{view['provider']}: {view['status']} ({view['external_account_label'] or '-'})")


# ---------------------------------------------------------------------------
# calendar
# ---------------------------------------------------------------------------


@cli.group()
def calendar() -> None:
    """Query the connected Google Calendar."""


@calendar.command("availability")
@config_option
@click.option("--calendar-id", default=None, help="Calendar to check (defaults to primary)")
@click.option("--time-min", default=None, help="Window start (ISO 8601, defaults to now)")
@click.option("--time-max", default=None, help="Window end (ISO 8601)")
@click.option("--duration", type=int, default=None, help="Minimum free slot in minutes")
def calendar_availability(
    config_path: Path | None,
    calendar_id: str | None,
    time_min: str | None,
    time_max: str | None,
    duration: int | None,
) -> None:
    """Print busy intervals and free slots."""
    config = _load(config_path)
    args = {
        "operation": "availability",
        "calendarId": calendar_id,
        "timeMin": _parse_time(time_min),
        "timeMax": _parse_time(time_max),
        "durationMinutes": duration,
    }
    _run_tool(config, args)


@calendar.command("resolve")
@click.argument("description")
@config_option
@click.option("--time-min", default=None, help="Search window start (ISO 8601)")
@click.option("--time-max", default=None, help="Search window end (ISO 8601)")
def calendar_resolve(
    description: str,
    config_path: Path | None,
    time_min: str | None,
    time_max: str | None,
) -> None:
    """Find the event a free-text DESCRIPTION refers to."""
    config = _load(config_path)
    args = {
        "operation": "resolve",
        "description": description,
        "timeMin": _parse_time(time_min),
        "timeMax": _parse_time(time_max),
    }
    _run_tool(config, args)


def _run_tool(config: AppConfig, args: dict) -> None:
    async def _run() -> dict:
        async with _services(config) as services:
            return await services.calendar_tool.execute(args)

    try:
        result = asyncio.run(_run())
    except IntegrationError as exc:
        result = build_error_payload(exc)
    _echo_json(result)
    if result.get("status") != "ok":
        raise SystemExit(1)


main = cli
