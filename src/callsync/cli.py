"""CLI for callsync: run, serve, inspect and reset call syncs."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path

import click
import httpx

from callsync.config import DEFAULT_CONFIG_FILE, SyncConfig, load_config
from callsync.core.logging import configure_logging
from callsync.core.metrics import init_metrics
from callsync.core.telemetry import init_telemetry
from callsync.destination import AirtableClient
from callsync.engine import SyncOrchestrator
from callsync.errors import CallSyncError, ConfigError
from callsync.models import SyncRunResult
from callsync.scheduler import SyncScheduler
from callsync.source import DialpadCallSource
from callsync.state import WatermarkStore


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Path to the callsync TOML config",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """callsync: mirror telephony call events into the CRM."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> SyncConfig:
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    return config


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run one sync and print its result as JSON."""
    config = _load(ctx)
    init_telemetry("callsync")
    init_metrics("callsync")
    try:
        result = asyncio.run(_run_once(config))
    except Exception as exc:
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)
    click.echo(result.model_dump_json(indent=2))
    if not result.success:
        sys.exit(1)


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run syncs on the configured cron schedule until interrupted."""
    config = _load(ctx)
    if not config.schedule.enabled:
        click.echo("Scheduling is disabled: set [schedule] enabled = true to serve", err=True)
        sys.exit(1)
    init_telemetry("callsync")
    init_metrics("callsync")
    click.echo(f"Serving call sync on schedule {config.schedule.cron!r}")
    asyncio.run(_serve(config))


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the persisted sync watermark."""
    config = _load(ctx)
    state = asyncio.run(WatermarkStore(config.state_dir).get_state())
    if state is None:
        click.echo("No watermark: the next continuous run starts at local midnight")
        return
    click.echo(json.dumps(state.model_dump(), indent=2))


@cli.command()
@click.confirmation_option(prompt="Clear the sync watermark?")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Clear the sync watermark."""
    config = _load(ctx)
    asyncio.run(WatermarkStore(config.state_dir).reset())
    click.echo("Sync watermark cleared")


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Validate call feed and destination credentials."""
    config = _load(ctx)
    ok = asyncio.run(_check(config))
    if not ok:
        sys.exit(1)


async def _run_once(config: SyncConfig) -> SyncRunResult:
    orchestrator = SyncOrchestrator.from_config(config)
    try:
        return await orchestrator.run()
    finally:
        await orchestrator.shutdown()


async def _serve(config: SyncConfig) -> None:
    orchestrator = SyncOrchestrator.from_config(config)
    scheduler = SyncScheduler(orchestrator, config.schedule)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    scheduler.start()
    try:
        await shutdown_event.wait()
    finally:
        await scheduler.stop()
        await orchestrator.shutdown()


async def _check(config: SyncConfig) -> bool:
    source = DialpadCallSource.from_config(config.source, retry_policy=config.retry)
    client = AirtableClient.from_config(config.destination, retry_policy=config.retry)
    ok = True
    try:
        try:
            company = await source.validate_credentials()
            click.echo(f"  call feed: ok ({company or 'unnamed company'})")
        except (CallSyncError, httpx.HTTPError) as exc:
            ok = False
            click.echo(f"  call feed: failed: {exc}")
        try:
            await client.validate_credentials(config.destination.customers_table)
            click.echo(f"  destination: ok (table {config.destination.customers_table!r})")
        except (CallSyncError, httpx.HTTPError) as exc:
            ok = False
            click.echo(f"  destination: failed: {exc}")
    finally:
        await source.shutdown()
        await client.shutdown()
    return ok
