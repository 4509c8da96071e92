"""Command-line interface with Rich formatting."""

import asyncio
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .config import load_settings, create_example_config
from .database import DatabaseManager
from .models import SyncResult
from .oauth import CalendarOAuthFlow, OAuthExchanger
from .server import CONFIG_ENV_VAR
from .state import StateTokenCodec
from .status import ConnectionStatusProjector
from .sync_engine import EventSyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up structured logging over the standard library."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_format or "%(message)s",
        stream=sys.stderr,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _require_valid_config(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nSet these environment variables or create a configuration file.\n" +
            "Use [bold]calmirror config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calmirror - mirror Google Calendar events into a local store.

    Connect a user's Google account through OAuth, keep the access token
    fresh, and pull the upcoming event window into the local database.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        ctx.obj['config_path'] = config
        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run HTTP server with background sync loop (container friendly)."""
    config_path = ctx.obj.get('config_path')
    if config_path:
        os.environ[CONFIG_ENV_VAR] = str(Path(config_path).absolute())

    try:
        import uvicorn
        uvicorn.run("calmirror.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--user-id', '-u', required=True, help='User whose calendar to sync')
@async_command
async def sync(ctx, user_id):
    """Pull one user's upcoming events into the mirror."""
    settings = ctx.obj['settings']
    _require_valid_config(settings)

    async with EventSyncEngine(settings) as engine:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task(f"Syncing calendar for {user_id}...", total=None)
            result = await engine.sync(user_id)

    _display_sync_results({user_id: result})
    if not result.success:
        logger.warning("sync_failed", user_id=user_id, error_kind=result.error_kind)
        sys.exit(1)


@cli.command('sync-all')
@async_command
async def sync_all(ctx):
    """Sync every connected user once."""
    settings = ctx.obj['settings']
    _require_valid_config(settings)

    async with EventSyncEngine(settings) as engine:
        results = await engine.sync_all()

    if not results:
        console.print("[yellow]No connected calendars[/yellow]")
        return
    _display_sync_results(results)
    if any(not r.success for r in results.values()):
        sys.exit(1)


@cli.command()
@click.option('--user-id', '-u', required=True, help='User to inspect')
@async_command
async def status(ctx, user_id):
    """Show a user's connection status and mirrored event count."""
    settings = ctx.obj['settings']

    try:
        async with EventSyncEngine(settings) as engine:
            connection_status = ConnectionStatusProjector(engine.store).status(user_id)
            event_count = engine.count_events(user_id)
    except Exception as e:
        console.print(f"[red]Failed to get status: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    table = Table(title=f"Calendar connection for {user_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Connected", "[green]yes[/green]" if connection_status.connected else "[red]no[/red]")
    table.add_row("Calendar scope", "yes" if connection_status.has_calendar_scope else "no")
    table.add_row("Account", connection_status.email or "-")
    table.add_row(
        "Last sync",
        connection_status.last_sync.strftime('%Y-%m-%d %H:%M:%S %Z') if connection_status.last_sync else "never"
    )
    table.add_row("Mirrored events", str(event_count))
    if connection_status.error:
        table.add_row("Error", f"[red]{connection_status.error}[/red]")
    console.print(table)


@cli.command()
@click.option('--user-id', '-u', required=True, help='User whose mirror to list')
@click.option('--limit', '-n', default=50, type=int, help='Maximum events to show')
@async_command
async def events(ctx, user_id, limit):
    """List mirrored events for a user."""
    settings = ctx.obj['settings']

    async with EventSyncEngine(settings) as engine:
        mirrored = engine.list_events(user_id)

    if not mirrored:
        console.print("[yellow]No mirrored events[/yellow]")
        return

    table = Table(title=f"Mirrored events ({len(mirrored)})")
    table.add_column("Start", style="cyan")
    table.add_column("End")
    table.add_column("Summary", style="bold")
    table.add_column("Location")
    table.add_column("Attendees", justify="right")
    for event in mirrored[:limit]:
        table.add_row(
            event.start_time, event.end_time, event.summary or "(no title)",
            event.location or "", str(len(event.attendees))
        )
    console.print(table)


@cli.command('auth-url')
@click.option('--user-id', '-u', required=True, help='User starting the connection')
@async_command
async def auth_url(ctx, user_id):
    """Print the Google consent URL for a user."""
    settings = ctx.obj['settings']
    _require_valid_config(settings)

    async with EventSyncEngine(settings) as engine:
        flow = CalendarOAuthFlow(
            settings,
            StateTokenCodec(settings.state_secret, settings.oauth_state_ttl_seconds),
            OAuthExchanger(engine.google_service, engine.store)
        )
        url = flow.authorization_url(user_id)

    console.print(Panel(
        f"{url}\n\n[dim]Google will redirect to {settings.google_redirect_uri}[/dim]",
        title="Open this URL to connect Google Calendar"
    ))


@cli.command()
@click.option('--user-id', '-u', required=True, help='User to disconnect')
@click.confirmation_option(prompt='Remove the connection and all mirrored events?')
@async_command
async def disconnect(ctx, user_id):
    """Delete a user's connection and mirrored events."""
    settings = ctx.obj['settings']

    async with EventSyncEngine(settings) as engine:
        result = engine.store.disconnect(user_id)

    console.print(f"[green]✓ {result.message}[/green]")
    console.print(f"[dim]{result.events_removed} mirrored events removed[/dim]")


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Sync all connected users on an interval."""
    settings = ctx.obj['settings']
    _require_valid_config(settings)

    if interval:
        settings.sync_config.sync_interval_minutes = interval

    sync_interval = settings.sync_config.sync_interval_minutes
    console.print(f"[green]Starting calmirror daemon[/green] - interval: {sync_interval} minutes")

    runs = 0
    try:
        async with EventSyncEngine(settings) as engine:
            while True:
                if max_runs and runs >= max_runs:
                    console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                    break

                console.print(f"\n[blue]--- Sync Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

                try:
                    results = await engine.sync_all()
                    _display_sync_results(results, compact=True)
                except Exception as e:
                    logger.error("sync_run_failed", run=runs + 1, error=str(e))
                    console.print(f"[red]Sync run failed: {e}[/red]")
                    if settings.debug:
                        console.print_exception()
                runs += 1

                if max_runs and runs >= max_runs:
                    break

                console.print(f"[dim]Next sync in {sync_interval} minutes...[/dim]")
                await asyncio.sleep(sync_interval * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']
    _require_valid_config(settings)
    console.print(Panel(
        "[green]✓ All required configuration fields are present[/green]",
        title="Configuration Validation",
        border_style="green"
    ))


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to delete all connections and mirrored events?')
@click.pass_context
def reset(ctx):
    """Drop all connections and mirrored events."""
    settings = ctx.obj['settings']

    try:
        DatabaseManager(settings).reset_db()
        console.print("[green]✓ All connections and mirrored events have been removed[/green]")
    except Exception as e:
        console.print(f"[red]Failed to reset data: {e}[/red]")
        sys.exit(1)


def _display_sync_results(results: Dict[str, SyncResult], compact: bool = False) -> None:
    """Display sync results per user."""
    if compact:
        for user_id, result in results.items():
            mark = "[green]✓[/green]" if result.success else "[red]✗[/red]"
            console.print(f"{mark} {user_id}: {result.message}")
        return

    table = Table(title="Sync Results")
    table.add_column("User", style="cyan")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Result")
    for user_id, result in results.items():
        table.add_row(
            user_id,
            str(result.created),
            str(result.updated),
            str(result.unchanged),
            str(result.skipped),
            f"[green]{result.message}[/green]" if result.success else f"[red]{result.message}[/red]",
        )
    console.print(table)


if __name__ == '__main__':
    cli()
