"""Command-line interface for the job tracker sync engine.

Provides commands for configuration validation, database setup, one-off
syncs, and the long-running server/scheduler.

Usage:
    python -m jobtracker validate-config
    python -m jobtracker init-db
    python -m jobtracker connect --email me@example.com
    python -m jobtracker sync --owner <owner-id>
    python -m jobtracker sync --all
    python -m jobtracker serve
    python -m jobtracker schedule
"""

from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from jobtracker.config import validate_config_file
from jobtracker.core.logging import configure_logging

if TYPE_CHECKING:
    import anthropic

    from jobtracker.config_schema import AppConfig
    from jobtracker.db.store import DatabaseStore
    from jobtracker.engine.sync import SyncOrchestrator, SyncSummary

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    anthropic_client: anthropic.Anthropic
    orchestrator: SyncOrchestrator


async def _load_config_and_store() -> tuple[AppConfig, DatabaseStore]:
    """Load config and open the database, exiting with a message on failure."""
    from jobtracker.config import get_config
    from jobtracker.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from jobtracker.db.store import DatabaseStore

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml from config/config.yaml.example with at least "
            "a [cyan]google.client_id[/cyan]."
        )
        sys.exit(1)

    store = DatabaseStore(config.database.path)
    try:
        await store.initialize()
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}")
        sys.exit(1)

    return config, store


async def _init_cli_deps() -> CLIDeps:
    """Initialize config, database, Anthropic client and orchestrator.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    import anthropic as anthropic_mod

    from jobtracker.engine.sync import build_orchestrator

    config, store = await _load_config_and_store()

    if not os.environ.get("ANTHROPIC_API_KEY"):
        console.print(
            "[red]ANTHROPIC_API_KEY is not set.[/red]\n"
            "Add it to your .env file; extraction cannot run without it."
        )
        sys.exit(1)

    anthropic_client = anthropic_mod.Anthropic(max_retries=3)
    orchestrator = build_orchestrator(config, store, anthropic_client)

    return CLIDeps(
        config=config,
        store=store,
        anthropic_client=anthropic_client,
        orchestrator=orchestrator,
    )


def _run_async(coro) -> None:
    """Run a command coroutine with the CLI's standard error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Job Tracker - Gmail reconciliation for job applications."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the SQLite database and tables if they don't exist."""
    _run_async(_init_db())


async def _init_db() -> None:
    from jobtracker.db.models import verify_schema

    config, store = await _load_config_and_store()
    if await verify_schema(store.db_path):
        console.print(f"[green]✓[/green] Database ready at [cyan]{config.database.path}[/cyan]")
    else:
        console.print(f"[red]✗[/red] Database at {config.database.path} is missing tables")
        sys.exit(1)


@cli.command("connect")
@click.option("--email", required=True, help="Google account email of the owner")
@click.option("--name", default=None, help="Display name")
@click.option(
    "--refresh-token-env",
    default="GMAIL_REFRESH_TOKEN",
    show_default=True,
    help="Environment variable holding a Gmail refresh token issued for this client",
)
def connect(email: str, name: str | None, refresh_token_env: str) -> None:
    """Store a Gmail refresh token for an owner (creating the owner if needed).

    The token must come from a consent flow run against the same Google
    OAuth client as google.client_id. It is read from the environment so it
    never appears in shell history.
    """
    refresh_token = os.environ.get(refresh_token_env)
    if not refresh_token:
        console.print(f"[red]{refresh_token_env} is not set.[/red]")
        sys.exit(1)
    _run_async(_connect(email, name, refresh_token))


async def _connect(email: str, name: str | None, refresh_token: str) -> None:
    _config, store = await _load_config_and_store()
    user = await store.upsert_user(email=email, name=name)
    await store.set_mailbox_credential(user.id, refresh_token)
    console.print(f"[green]✓[/green] Gmail connected for {email} (owner id [cyan]{user.id}[/cyan])")


@cli.command("sync")
@click.option("--owner", "owner_id", default=None, help="Sync a single owner by id")
@click.option("--all", "sync_all", is_flag=True, help="Run one cadence pass over every owner")
def sync(owner_id: str | None, sync_all: bool) -> None:
    """Run a sync now and print the results."""
    if bool(owner_id) == sync_all:
        console.print("[red]Pass exactly one of --owner ID or --all.[/red]")
        sys.exit(2)

    if sync_all:
        _run_async(_sync_all())
    else:
        _run_async(_sync_owner(owner_id))


def _print_summary(summary: SyncSummary) -> None:
    console.print(f"\n[bold]Sync Summary[/bold] (run {summary.run_id[:8]}...)")
    console.print(f"  Duration:  {summary.duration_ms}ms")
    console.print(f"  Fetched:   {summary.fetched}")
    console.print(f"  Created:   {summary.created}")
    console.print(f"  Updated:   {summary.updated}")
    console.print(f"  Skipped:   {summary.skipped}")


async def _sync_owner(owner_id: str) -> None:
    from jobtracker.core.errors import AuthenticationError, MailTransportError

    deps = await _init_cli_deps()

    user = await deps.store.get_user(owner_id)
    if user is None:
        console.print(f"[red]No owner with id {owner_id}.[/red]")
        sys.exit(1)
    if not user.gmail_refresh_token:
        console.print(
            f"[red]Gmail is not connected for {user.email}.[/red]\n"
            "Run [cyan]python -m jobtracker connect[/cyan] first."
        )
        sys.exit(1)

    try:
        summary = await deps.orchestrator.run_sync(
            user.id,
            user.gmail_refresh_token,
            user.last_sync_at,
            trigger="cli",
        )
    except AuthenticationError as e:
        console.print(f"\n[red]Authentication error:[/red] {e}")
        sys.exit(1)
    except MailTransportError as e:
        console.print(f"\n[red]Gmail error:[/red] {e}\n\nThe watermark was not advanced.")
        sys.exit(1)

    _print_summary(summary)


async def _sync_all() -> None:
    from jobtracker.engine.scheduler import SyncScheduler

    deps = await _init_cli_deps()
    scheduler = SyncScheduler(deps.orchestrator, deps.store, deps.config)
    result = await scheduler.run_cadence()

    table = Table(title="Cadence pass")
    table.add_column("Owner")
    table.add_column("Fetched", justify="right")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Skipped", justify="right")
    for summary in result.summaries:
        table.add_row(
            summary.owner_id,
            str(summary.fetched),
            str(summary.created),
            str(summary.updated),
            str(summary.skipped),
        )
    console.print(table)
    console.print(
        f"Owners: {result.owners}  succeeded: {result.succeeded}  "
        f"failed: [{'red' if result.failed else 'green'}]{result.failed}[/]"
    )


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the sync scheduler and HTTP API server."""
    import uvicorn

    from jobtracker.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network."
        )

    configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("schedule")
def schedule() -> None:
    """Run the sync cadence without the HTTP server."""
    try:
        asyncio.run(_run_schedule())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_schedule() -> None:
    """Run the cadence in the foreground until interrupted."""
    import signal

    from jobtracker.engine.scheduler import SyncScheduler

    deps = await _init_cli_deps()
    scheduler = SyncScheduler(deps.orchestrator, deps.store, deps.config)
    await scheduler.start()

    console.print(
        f"Syncing every {deps.config.sync.interval_hours} hours. Press Ctrl+C to stop."
    )

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    await scheduler.shutdown()


def main() -> None:
    """Entry point for the CLI.

    Loads .env first so the installed ``jobtracker`` script and
    ``python -m jobtracker`` see the same environment.
    """
    load_dotenv()
    cli()
