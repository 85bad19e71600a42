"""Command-line interface for opentasks-sync."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from opentasks_sync import __version__
from opentasks_sync.core.config import AppConfig, load_config
from opentasks_sync.core.errors import ConfigurationError, RemoteError
from opentasks_sync.core.service import TasksSyncService
from opentasks_sync.core.tasks_sync import STATUS_ERROR, SyncReport
from opentasks_sync.sources.caldav.client import CalDAVTaskClient
from opentasks_sync.sources.caldav.discovery import CollectionDiscovery, collection_display_name
from opentasks_sync.utils.credentials import CredentialStore
from opentasks_sync.utils.db import TaskStore
from opentasks_sync.utils.logging import setup_logging

# Create Typer app
app = typer.Typer(
    name="opentasks-sync",
    help="Synchronize a local task store with CalDAV task collections",
    add_completion=False,
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """opentasks-sync - CalDAV task synchronization."""
    ctx.ensure_object(dict)
    cfg = load_config(config_file)
    ctx.obj["config"] = cfg

    # Config file wins unless a level was given explicitly
    if log_level == "INFO" and cfg.general.log_level != "INFO":
        log_level = cfg.general.log_level
    setup_logging(cfg, level_name=log_level)


def _format_timestamp(value: float | None) -> str:
    if value is None:
        return "Never"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


def _require_caldav(cfg: AppConfig) -> str:
    """Exit with a hint unless CalDAV is configured; returns the password."""
    if not cfg.caldav.enabled:
        console.print("[red]CalDAV sync is not enabled in configuration[/red]")
        raise typer.Exit(1)

    if not cfg.caldav.is_configured:
        console.print("[red]CalDAV server URL and username are not configured[/red]")
        console.print("[dim]Set OPENTASKS_CALDAV_SERVER_URL and OPENTASKS_CALDAV_USERNAME or edit your config[/dim]")
        raise typer.Exit(1)

    password = cfg.caldav.get_password()
    if not password:
        console.print("[red]CalDAV password not configured[/red]")
        console.print("[dim]Set password with: opentasks-sync set-password[/dim]")
        raise typer.Exit(1)
    return password


def _build_client(cfg: AppConfig, password: str) -> CalDAVTaskClient:
    return CalDAVTaskClient(
        cfg.caldav.server_url,
        cfg.caldav.username,
        password,
        timeout=cfg.caldav.request_timeout_seconds,
        ssl_verify=cfg.caldav.ssl_verify,
        task_extension=cfg.caldav.task_extension,
    )


def _print_report(report: SyncReport) -> None:
    style = {"success": "green", "partial": "yellow", "error": "red"}.get(report.status, "cyan")

    table = Table(title=f"Sync Result: [{style}]{report.status}[/{style}]")
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Count", style="green", justify="right")
    for name, value in report.stats.items():
        table.add_row(name.replace("_", " ").capitalize(), str(value))
    console.print(table)

    if report.duration is not None:
        console.print(f"[dim]Duration: {report.duration:.1f}s, discovery: {report.discovery_source or 'n/a'}[/dim]")

    if report.failures:
        failures = Table(title="Failures")
        failures.add_column("Phase", style="cyan")
        failures.add_column("Target", style="magenta")
        failures.add_column("Error", style="red")
        for failure in report.failures:
            failures.add_row(failure.phase, failure.target, failure.message)
        console.print(failures)

    if report.error:
        console.print(f"[red]Error: {report.error}[/red]")


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="opentasks-sync Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(
        False,
        "--show",
        "-s",
        help="Show current configuration",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        "-i",
        help="Create a default configuration file",
    ),
) -> None:
    """Manage configuration."""
    cfg = ctx.obj["config"]

    if init:
        config_path = cfg.general.config_file or cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            if not typer.confirm("Overwrite existing config?"):
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        cfg.save_to_file(config_path)
        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        console.print("[yellow]Edit this file to configure your CalDAV server.[/yellow]")
        return

    if show:
        table = Table(title="opentasks-sync Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)
        table.add_row("Task Database", str(cfg.tasks_db_path))

        table.add_row("", "")
        table.add_row("[bold]CalDAV[/bold]", "")
        table.add_row("Enabled", "✓" if cfg.caldav.enabled else "✗")
        table.add_row("Server URL", cfg.caldav.server_url or "Not set")
        table.add_row("Username", cfg.caldav.username or "Not set")
        table.add_row("Collection Root", cfg.caldav.resolved_collection_path)
        table.add_row("Sync Interval", f"{cfg.caldav.sync_interval_minutes} min")
        table.add_row("Debounce", f"{cfg.caldav.debounce_seconds:g} s")
        table.add_row("Tombstone Retention", f"{cfg.caldav.tombstone_retention_hours:g} h")
        table.add_row("SSL Verify", "✓" if cfg.caldav.ssl_verify else "✗")

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


@app.command("test-connection")
def test_connection(ctx: typer.Context) -> None:
    """Check that the CalDAV server is reachable with the configured credentials."""
    cfg = ctx.obj["config"]
    password = _require_caldav(cfg)

    async def run_test() -> bool:
        async with _build_client(cfg, password) as client:
            return await client.test_connection()

    if asyncio.run(run_test()):
        console.print(f"[green]✓ Connected to {cfg.caldav.server_url}[/green]")
    else:
        console.print(f"[red]✗ Could not connect to {cfg.caldav.server_url}[/red]")
        raise typer.Exit(1)


@app.command()
def collections(ctx: typer.Context) -> None:
    """List the task collections discovered on the server."""
    cfg = ctx.obj["config"]
    password = _require_caldav(cfg)
    root = cfg.caldav.resolved_collection_path

    async def run_discovery():
        async with _build_client(cfg, password) as client:
            discovery = CollectionDiscovery(client, root, cfg.caldav.task_extension)
            return await discovery.discover()

    try:
        result = asyncio.run(run_discovery())
    except RemoteError as e:
        console.print(f"[red]Discovery failed: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Task Collections under {root}")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Path", style="green")
    for path in result.paths:
        table.add_row(collection_display_name(path), path)
    console.print(table)

    console.print(f"[dim]Source: {result.source}[/dim]")
    if result.error:
        console.print(f"[yellow]Discovery fell back to the configured root: {result.error}[/yellow]")


@app.command()
def sync(ctx: typer.Context) -> None:
    """Run one synchronization pass now."""
    cfg = ctx.obj["config"]
    _require_caldav(cfg)

    async def run_sync() -> SyncReport | None:
        async with TasksSyncService(cfg) as service:
            return await service.sync_now("cli")

    try:
        report = asyncio.run(run_sync())
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if report is None:
        console.print("[yellow]A sync is already running[/yellow]")
        return

    _print_report(report)
    if report.status == STATUS_ERROR:
        raise typer.Exit(1)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show sync status."""
    cfg = ctx.obj["config"]

    console.print("[bold]CalDAV Sync Status[/bold]\n")

    if cfg.caldav.enabled:
        console.print("✓ CalDAV sync enabled", style="green")
    else:
        console.print("✗ CalDAV sync disabled", style="red")

    if cfg.caldav.server_url:
        console.print(f"✓ Server URL: {cfg.caldav.server_url}", style="green")
    else:
        console.print("✗ Server URL not configured", style="red")

    if cfg.caldav.username:
        console.print(f"✓ Username: {cfg.caldav.username}", style="green")
        if CredentialStore().has_caldav_password(cfg.caldav.username):
            console.print("✓ Password: stored in system keyring (secure)", style="green")
        elif cfg.caldav.password:
            console.print("✓ Password: configured in config/env (consider using keyring)", style="yellow")
        else:
            console.print("✗ Password not configured", style="red")
    else:
        console.print("✗ Username not configured", style="red")

    if not cfg.tasks_db_path.exists():
        console.print(f"\nℹ Task database not initialized: {cfg.tasks_db_path}", style="yellow")
        return

    async def load_status():
        store = TaskStore(cfg.tasks_db_path)
        await store.initialize()
        state = await store.get_sync_state(cfg.sync_target)
        lists = await store.list_collections(cfg.sync_target)
        counts = await store.task_counts()
        return state, lists, counts

    state, lists, counts = asyncio.run(load_status())

    table = Table(title="Last Sync")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    if state is None:
        table.add_row("Status", "Never synced")
    else:
        table.add_row("Status", state.status or "unknown")
        table.add_row("Last success", _format_timestamp(state.last_sync_at))
        table.add_row("Last attempt", _format_timestamp(state.last_attempt_at))
        if state.last_error:
            table.add_row("Last error", f"[red]{state.last_error}[/red]")
    table.add_row("Collections", str(len(lists)))
    table.add_row("Tasks", str(counts["live"]))
    table.add_row("Pending changes", str(counts["dirty"]))
    table.add_row("Tombstones", str(counts["tombstones"]))
    console.print()
    console.print(table)


@app.command()
def serve(
    ctx: typer.Context,
    no_initial_sync: bool = typer.Option(
        False,
        "--no-initial-sync",
        help="Do not sync immediately on startup",
    ),
) -> None:
    """Run the sync scheduler in the foreground until interrupted."""
    cfg = ctx.obj["config"]
    _require_caldav(cfg)

    console.print(Panel.fit(
        f"[bold cyan]opentasks-sync[/bold cyan]\n\n"
        f"[white]Syncing {cfg.caldav.username}@{cfg.caldav.server_url} "
        f"every {cfg.caldav.sync_interval_minutes} min[/white]",
        border_style="cyan",
    ))

    async def run_forever() -> None:
        async with TasksSyncService(cfg) as service:
            await service.start(initial_sync=not no_initial_sync)
            await asyncio.Event().wait()

    try:
        console.print("[dim]Press Ctrl+C to stop[/dim]\n")
        asyncio.run(run_forever())
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Scheduler stopped[/yellow]")


@app.command("set-password")
def set_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(
        None,
        "--username",
        "-u",
        help="CalDAV username (default: from config)",
    ),
) -> None:
    """Save the CalDAV password in the system keyring."""
    cfg = ctx.obj["config"]

    if not username:
        username = cfg.caldav.username
        if not username:
            console.print("[red]No CalDAV username given and none configured[/red]")
            console.print("[dim]Use --username or set OPENTASKS_CALDAV_USERNAME[/dim]")
            raise typer.Exit(1)

    password = typer.prompt(f"Enter CalDAV password for {username}", hide_input=True)
    password_confirm = typer.prompt("Confirm password", hide_input=True)

    if password != password_confirm:
        console.print("[red]The two entries differ, nothing saved[/red]")
        raise typer.Exit(1)

    try:
        CredentialStore().set_caldav_password(username, password)
    except Exception as e:
        console.print(f"[red]Keyring refused the password: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Saved CalDAV password for {username}[/green]")
    console.print("[dim]You can now remove the password from your config/environment[/dim]")


@app.command("delete-password")
def delete_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(
        None,
        "--username",
        "-u",
        help="CalDAV username (default: from config)",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """Remove the saved CalDAV password from the keyring."""
    cfg = ctx.obj["config"]

    if not username:
        username = cfg.caldav.username
        if not username:
            console.print("[red]No CalDAV username given and none configured[/red]")
            raise typer.Exit(1)

    if not yes and not typer.confirm(f"Delete stored CalDAV password for {username}?"):
        console.print("[dim]Cancelled[/dim]")
        raise typer.Exit(0)

    if CredentialStore().delete_caldav_password(username):
        console.print(f"[green]✓ Removed CalDAV password for {username}[/green]")
    else:
        console.print(f"[yellow]No stored password found for user: {username}[/yellow]")


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        logging.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main_entry()
