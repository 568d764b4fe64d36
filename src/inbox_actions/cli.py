"""Command-line interface for inbox-actions.

Usage:
    python -m inbox_actions validate-config
    python -m inbox_actions init-db
    python -m inbox_actions sync --user alice --provider gmail
    python -m inbox_actions run --user alice --provider imap
    python -m inbox_actions run-all
    python -m inbox_actions actions --user alice
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from inbox_actions.config import validate_config_file
from inbox_actions.core.logging import configure_logging

if TYPE_CHECKING:
    from inbox_actions.config_schema import AppConfig
    from inbox_actions.db.store import DatabaseStore, Provider

console = Console()

PROVIDER_NAMES: dict[str, Provider] = {
    "gmail": "GMAIL",
    "graph": "MICROSOFT_GRAPH",
    "imap": "IMAP",
}

user_option = click.option("--user", "-u", "user_id", required=True, help="User id")
provider_option = click.option(
    "--provider",
    "-p",
    "provider_name",
    type=click.Choice(sorted(PROVIDER_NAMES), case_sensitive=False),
    required=True,
    help="Mailbox backend",
)


def _run_async(work: Callable[[], Awaitable[Any]]) -> None:
    """Run an async command body with the CLI's error reporting."""
    from inbox_actions.core.errors import (
        ProviderUnavailableError,
        ReconnectRequiredError,
        RunInProgressError,
    )

    try:
        asyncio.run(work())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except ProviderUnavailableError as e:
        console.print(f"\n[red]Not connected:[/red] {e}")
        sys.exit(1)
    except ReconnectRequiredError as e:
        console.print(f"\n[red]Reconnect required:[/red] {e}")
        sys.exit(1)
    except RunInProgressError as e:
        console.print(f"\n[yellow]Busy:[/yellow] {e}")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _open_store(config: AppConfig) -> DatabaseStore:
    from inbox_actions.db.store import DatabaseStore

    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    return store


def _load_config() -> AppConfig:
    from inbox_actions.config import get_config
    from inbox_actions.core.errors import ConfigLoadError, ConfigValidationError

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and edit it."
        )
        sys.exit(1)

    # --debug wins over the configured level
    ctx = click.get_current_context(silent=True)
    if ctx is None or not ctx.find_root().params.get("debug"):
        configure_logging(
            log_level=config.logging.level, json_output=config.logging.json_output
        )
    return config


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """inbox-actions - turn incoming email into a to-do list."""
    log_level = "DEBUG" if debug else "INFO"
    # Human-readable output for the CLI; JSON is for services
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
    """Validate the configuration file."""
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]OK[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]FAILED[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database and its tables (idempotent)."""

    async def work() -> None:
        config = _load_config()
        store = await _open_store(config)
        console.print(f"Database ready at [cyan]{store.db_path}[/cyan]")

    _run_async(work)


@cli.command("sync")
@user_option
@provider_option
@click.option("--max", "max_results", type=int, default=None, help="Cap on messages listed")
@click.option("--folder", default=None, help="Folder or label (default from config)")
def sync(user_id: str, provider_name: str, max_results: int | None, folder: str | None) -> None:
    """Fetch metadata of new messages. Bodies are not stored."""

    async def work() -> None:
        from inbox_actions.providers import FetchOptions, create_provider

        config = _load_config()
        store = await _open_store(config)
        provider = PROVIDER_NAMES[provider_name.lower()]
        limit = max_results if max_results is not None else config.sync.max_emails_to_sync

        async with await create_provider(store, user_id, provider, config) as adapter:
            created = await adapter.fetch_new_emails(FetchOptions(max_results=limit, folder=folder))

        console.print(f"[green]{len(created)}[/green] new message(s) stored for {user_id}")
        for email in created:
            console.print(f"  {email.received_at:%Y-%m-%d %H:%M}  {email.sender}  {email.subject or ''}")

    _run_async(work)


@cli.command("analyze")
@user_option
@provider_option
@click.option("--limit", type=int, default=None, help="Maximum messages to analyze")
def analyze(user_id: str, provider_name: str, limit: int | None) -> None:
    """Extract actions from messages that haven't been analyzed yet."""

    async def work() -> None:
        from inbox_actions.engine.analysis import AnalysisOrchestrator
        from inbox_actions.extraction.engine import ActionExtractor
        from inbox_actions.providers import create_provider

        config = _load_config()
        store = await _open_store(config)
        provider = PROVIDER_NAMES[provider_name.lower()]

        orchestrator = AnalysisOrchestrator(
            store,
            ActionExtractor.from_config(config),
            max_emails=limit if limit is not None else config.sync.max_emails_to_analyze,
        )
        async with await create_provider(store, user_id, provider, config) as adapter:
            result = await orchestrator.analyze(adapter)

        console.print("\n[bold]Analysis Summary[/bold]")
        console.print(f"  Processed:   {result.processed_emails}")
        console.print(f"  Actions:     {result.extracted_actions}")
        console.print(f"  Skipped:     {result.skipped_emails}")

    _run_async(work)


@cli.command("run")
@user_option
@provider_option
def run(user_id: str, provider_name: str) -> None:
    """Sync then analyze one account."""

    async def work() -> None:
        from inbox_actions.engine.runner import RunCoordinator

        config = _load_config()
        store = await _open_store(config)
        result = await RunCoordinator(store, config).run_for_user(
            user_id, PROVIDER_NAMES[provider_name.lower()]
        )

        console.print(f"\n[bold]Run Summary[/bold] (run {result.run_id[:8]}...)")
        console.print(f"  Duration:    {result.duration_ms}ms")
        console.print(f"  Synced:      {result.synced_emails}")
        console.print(f"  Processed:   {result.processed_emails}")
        console.print(f"  Actions:     {result.extracted_actions}")
        console.print(f"  Skipped:     {result.skipped_emails}")

    _run_async(work)


@cli.command("run-all")
def run_all() -> None:
    """Sync then analyze every connected account."""

    async def work() -> None:
        from inbox_actions.engine.runner import RunCoordinator

        config = _load_config()
        store = await _open_store(config)
        batch = await RunCoordinator(store, config).run_all()

        table = Table(title="Run results")
        table.add_column("User")
        table.add_column("Provider")
        table.add_column("Synced", justify="right")
        table.add_column("Processed", justify="right")
        table.add_column("Actions", justify="right")
        table.add_column("Skipped", justify="right")
        for result in batch.results:
            table.add_row(
                result.user_id,
                result.provider,
                str(result.synced_emails),
                str(result.processed_emails),
                str(result.extracted_actions),
                str(result.skipped_emails),
            )
        console.print(table)

        for key, error in batch.failures.items():
            console.print(f"[red]Failed[/red] {key}: {error}")
        if batch.failures:
            sys.exit(1)

    _run_async(work)


@cli.command("count")
@user_option
@provider_option
def count(user_id: str, provider_name: str) -> None:
    """Count messages a sync would store now, without storing anything."""

    async def work() -> None:
        from inbox_actions.providers import create_provider

        config = _load_config()
        store = await _open_store(config)
        provider = PROVIDER_NAMES[provider_name.lower()]

        async with await create_provider(store, user_id, provider, config) as adapter:
            new_count = await adapter.count_new_emails()
        console.print(f"[cyan]{new_count}[/cyan] new message(s)")

    _run_async(work)


@cli.command("status")
@user_option
@provider_option
def status(user_id: str, provider_name: str) -> None:
    """Show connection state and processing counters for one account."""

    async def work() -> None:
        config = _load_config()
        store = await _open_store(config)
        provider = PROVIDER_NAMES[provider_name.lower()]

        connection = await store.get_connection(user_id, provider)
        checkpoint = await store.get_checkpoint(user_id, provider)
        counts = await store.count_emails_by_status(user_id, provider)

        table = Table(title=f"{user_id} / {provider}", show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Connected", "yes" if connection and connection.is_connected else "no")
        last_sync = connection.last_sync_at if connection else None
        table.add_row("Last sync", f"{last_sync:%Y-%m-%d %H:%M:%S %Z}" if last_sync else "never")
        if connection and connection.last_error:
            table.add_row("Last error", connection.last_error)
        since = checkpoint.since if checkpoint else None
        table.add_row("Checkpoint", since.isoformat() if since else "none")
        table.add_row("Extracted", str(counts["EXTRACTED"]))
        table.add_row("Analyzed", str(counts["ANALYZED"]))
        console.print(table)

    _run_async(work)


@cli.command("actions")
@user_option
@click.option(
    "--status",
    "action_status",
    type=click.Choice(["TODO", "DONE", "IGNORED"]),
    default=None,
    help="Only actions with this status",
)
def actions(user_id: str, action_status: str | None) -> None:
    """List extracted actions, soonest due first."""

    async def work() -> None:
        config = _load_config()
        store = await _open_store(config)
        rows = await store.get_actions(user_id, status=action_status)

        table = Table(title=f"Actions for {user_id}")
        table.add_column("Due")
        table.add_column("Type")
        table.add_column("Title")
        table.add_column("From")
        for action in rows:
            table.add_row(
                f"{action.due_date:%Y-%m-%d %H:%M}" if action.due_date else "-",
                action.action_type,
                action.title,
                action.email_from or "",
            )
        console.print(table)

    _run_async(work)


@cli.command("ignored")
@user_option
@click.option(
    "--provider",
    "-p",
    "provider_name",
    type=click.Choice(sorted(PROVIDER_NAMES), case_sensitive=False),
    default=None,
    help="Only this backend",
)
def ignored(user_id: str, provider_name: str | None) -> None:
    """List analyzed messages that produced no action."""

    async def work() -> None:
        config = _load_config()
        store = await _open_store(config)
        provider = PROVIDER_NAMES[provider_name.lower()] if provider_name else None
        emails = await store.get_ignored_emails(user_id, provider)

        table = Table(title=f"Ignored messages for {user_id}")
        table.add_column("Received")
        table.add_column("From")
        table.add_column("Subject")
        for email in emails:
            table.add_row(
                f"{email.received_at:%Y-%m-%d %H:%M}", email.sender, email.subject or ""
            )
        console.print(table)

    _run_async(work)


def main() -> None:
    """Entry point for the CLI. Loads .env before any config is read."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
