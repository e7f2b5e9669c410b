"""CLI for calbridge: run the webhook server and manage event mappings."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from calbridge import __version__
from calbridge.config import BridgeConfig, ConfigError, load_config
from calbridge.core.logging import configure_logging
from calbridge.core.mapping_store import build_mapping_store
from calbridge.errors import CalbridgeError, safe_error_message
from calbridge.service import DEFAULT_WATCH_TTL_SECONDS, BridgeService

logger = logging.getLogger(__name__)


def _load(ctx: click.Context) -> BridgeConfig:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(config.logging.level, config.logging.format, config.logging.log_file)
    return config


async def _run_with_service(config: BridgeConfig, operation):
    service = BridgeService.from_config(config)
    try:
        return await operation(service)
    finally:
        await service.shutdown()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Optional calbridge.toml; environment variables override it",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """calbridge: keep registry records and calendar events in step."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config / PORT)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the webhook server."""
    import uvicorn

    from calbridge.api.app import create_app

    config = _load(ctx)
    missing = config.missing_credentials()
    if missing:
        click.echo(f"Warning: missing environment variables: {', '.join(missing)}", err=True)

    bind_host = host or config.server.host
    bind_port = port or config.server.port
    click.echo(f"Starting calbridge on {bind_host}:{bind_port}")
    uvicorn.run(create_app(config=config), host=bind_host, port=bind_port, log_config=None)


@cli.group()
def mappings() -> None:
    """Inspect and edit the logical id -> event id mappings."""


@mappings.command("list")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of a table")
@click.pass_context
def mappings_list(ctx: click.Context, as_json: bool) -> None:
    """List stored mappings."""
    config = _load(ctx)
    store = build_mapping_store(config.mapping)
    try:
        entries = store.items()
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps({m.logical_id: m.event_id for m in entries}, indent=2, sort_keys=True))
        return
    if not entries:
        click.echo(f"No mappings in {config.mapping.path}")
        return

    click.echo(f"{'Record':<20} {'Event':<40} {'Updated'}")
    click.echo("-" * 80)
    for m in entries:
        click.echo(f"{m.logical_id:<20} {m.event_id:<40} {m.updated_at.isoformat()}")


@mappings.command("remove")
@click.argument("logical_id")
@click.pass_context
def mappings_remove(ctx: click.Context, logical_id: str) -> None:
    """Drop one mapping; the calendar event is left alone."""
    config = _load(ctx)
    store = build_mapping_store(config.mapping)
    try:
        removed = store.remove(logical_id)
    finally:
        store.close()
    if not removed:
        click.echo(f"No mapping for {logical_id}")
        sys.exit(1)
    click.echo(f"Removed mapping for {logical_id}")


@mappings.command("clear")
@click.option(
    "--keep-events",
    is_flag=True,
    help="Only forget the mappings; do not delete the synced calendar events",
)
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def mappings_clear(ctx: click.Context, keep_events: bool, yes: bool) -> None:
    """Reset all mappings (and by default delete their calendar events)."""
    config = _load(ctx)
    if not yes:
        if keep_events:
            prompt = "Remove all mappings? Calendar events are kept."
        else:
            prompt = (
                "Remove all mappings AND delete their calendar events? "
                "Pass --keep-events to only forget the mappings."
            )
        click.confirm(prompt, abort=True)

    try:
        outcome = asyncio.run(
            _run_with_service(
                config,
                lambda service: service.clear_mappings(delete_counterparts=not keep_events),
            )
        )
    except CalbridgeError as exc:
        click.echo(f"Clear failed: {safe_error_message(exc)}", err=True)
        sys.exit(1)

    click.echo(f"Removed {outcome.removed} mapping(s)")
    if outcome.failed:
        click.echo(f"Failed to delete events for: {', '.join(outcome.failed)}", err=True)
        sys.exit(1)


@mappings.command("reload")
@click.pass_context
def mappings_reload(ctx: click.Context) -> None:
    """Re-read the durable store and report how many mappings it holds."""
    config = _load(ctx)
    store = build_mapping_store(config.mapping)
    try:
        count = store.reload()
    finally:
        store.close()
    click.echo(f"Loaded {count} mapping(s) from {config.mapping.path}")


@cli.command()
@click.argument("payload_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def reconcile(ctx: click.Context, payload_path: Path) -> None:
    """Push one registry payload (a JSON file) to the calendar."""
    config = _load(ctx)
    try:
        payload = json.loads(payload_path.read_text())
    except json.JSONDecodeError as exc:
        click.echo(f"Invalid JSON in {payload_path}: {exc.msg}", err=True)
        sys.exit(1)

    try:
        outcome = asyncio.run(_run_with_service(config, lambda s: s.push_record(payload)))
    except CalbridgeError as exc:
        click.echo(f"Reconcile failed: {safe_error_message(exc)}", err=True)
        sys.exit(1)

    click.echo(f"{outcome.action}: {outcome.logical_id} -> {outcome.event_id}")


@cli.command()
@click.option("--address", default=None, help="Public HTTPS URL (default WEBHOOK_URL)")
@click.option("--channel-id", default=None, help="Channel id (random when omitted)")
@click.option("--ttl", type=int, default=DEFAULT_WATCH_TTL_SECONDS, show_default=True)
@click.pass_context
def watch(ctx: click.Context, address: str | None, channel_id: str | None, ttl: int) -> None:
    """Register a calendar push-notification channel."""
    config = _load(ctx)
    target = address or config.google.webhook_address
    if not target:
        click.echo("No webhook address: pass --address or set WEBHOOK_URL", err=True)
        sys.exit(1)

    try:
        result = asyncio.run(
            _run_with_service(
                config,
                lambda s: s.register_webhook(target, channel_id=channel_id, ttl_seconds=ttl),
            )
        )
    except CalbridgeError as exc:
        click.echo(f"Watch registration failed: {safe_error_message(exc)}", err=True)
        sys.exit(1)

    click.echo(f"Watching channel {result.get('id', channel_id)} -> {target}")


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate configuration and report missing credentials."""
    config = _load(ctx)
    click.echo(f"Port:             {config.server.port}")
    click.echo(f"Calendar:         {config.google.default_calendar_id}")
    click.echo(f"Timezone:         {config.google.default_timezone}")
    click.echo(f"Mapping backend:  {config.mapping.backend} ({config.mapping.path})")
    missing = config.missing_credentials()
    if missing:
        click.echo(f"Missing: {', '.join(missing)}")
        sys.exit(1)
    click.echo("Configuration OK")
