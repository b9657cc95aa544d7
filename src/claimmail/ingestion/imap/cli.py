"""CLI commands for mail sync operation and configuration."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from claimmail.configuration.email_config import EmailConfig, EmailConfigStore
from claimmail.configuration.settings import RuntimeSettings, Settings, load_settings
from claimmail.errors import ClaimMailError, format_error_for_cli

from .mailbox_fetcher import MailboxFetcher
from .supervisor import build_supervisor
from .sync_state import CheckpointStore
from .thread_store import MailRecordStore
from .trigger_server import TriggerServer

console = Console()
error_console = Console(stderr=True)

mail_app = typer.Typer(help="Mailbox sync commands")
config_app = typer.Typer(help="Runtime IMAP configuration")
mail_app.add_typer(config_app, name="config")


@mail_app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Synchronize the claims mailbox."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, rich_tracebacks=verbose)],
    )


def _settings(json_output: bool) -> Settings:
    try:
        return load_settings()
    except ClaimMailError as exc:
        _fail(exc, json_output)


def _fail(exc: Exception, json_output: bool) -> NoReturn:
    if json_output:
        payload: Dict[str, Any] = {"success": False, "error": str(exc)}
        if isinstance(exc, ClaimMailError):
            payload.update(code=exc.code, message=exc.user_message)
        print(json.dumps(payload))
    else:
        error_console.print(f"[bold red]✗[/bold red] {format_error_for_cli(exc)}")
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Sync commands
# ---------------------------------------------------------------------------


@mail_app.command("run")
def run_sync(
    json_output: bool = typer.Option(False, "--json", help="Output startup status as JSON"),
) -> None:
    """Start the supervisor and the trigger API until interrupted."""
    settings = _settings(json_output)

    async def _serve() -> None:
        supervisor = build_supervisor(settings)
        server = TriggerServer(supervisor, settings.server)
        try:
            status = await supervisor.ensure_running()
            await server.start()
            if json_output:
                print(json.dumps(status.to_api()))
            else:
                mode = status.mode.value if status.mode else "inactive"
                console.print(
                    f"[bold green]Mail sync {mode}[/bold green], trigger API on "
                    f"http://{settings.server.listen_host}:{settings.server.listen_port}"
                )
            await asyncio.Event().wait()
        finally:
            await server.stop()
            await supervisor.aclose()

    try:
        asyncio.run(_serve())
    except ClaimMailError as exc:
        _fail(exc, json_output)
    except KeyboardInterrupt:
        if not json_output:
            console.print("Mail sync stopped")


@mail_app.command("sync-now")
def sync_now(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Run one ingestion pass and print the counts."""
    settings = _settings(json_output)

    async def _once():
        supervisor = build_supervisor(settings)
        try:
            return await supervisor.sync_now()
        finally:
            await supervisor.aclose()

    try:
        result = asyncio.run(_once())
    except Exception as exc:  # noqa: BLE001
        _fail(exc, json_output)

    if json_output:
        print(json.dumps({"success": True, **result.to_api(), "failures": len(result.failures)}))
        return

    if result.skipped_reason:
        console.print(f"[yellow]Sync skipped: {result.skipped_reason}[/yellow]")
        return
    console.print(
        f"[bold green]✓[/bold green] {result.new_messages} new messages, "
        f"{result.new_threads} new threads ({result.duplicates} duplicates)"
    )
    for failure in result.failures:
        error_console.print(f"[red]{failure.stage} {failure.item}:[/red] {failure.error}")


@mail_app.command("status")
def status(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the checkpoint and stored record counts."""
    settings = _settings(json_output)
    db_path = settings.storage.database_path

    checkpoint_store = CheckpointStore(db_path)
    record_store = MailRecordStore(db_path)
    config_store = EmailConfigStore(db_path)
    try:
        checkpoint = checkpoint_store.read()
        mailbox = RuntimeSettings(settings, config_store).mailbox()
        info = {
            "enabled": settings.sync.enabled,
            "useIdle": settings.sync.use_idle,
            "configured": mailbox.is_configured,
            "lastProcessedId": checkpoint.last_processed_id,
            "lastSyncedAt": checkpoint.last_synced_at.isoformat()
            if checkpoint.last_synced_at
            else None,
            "threads": record_store.count_threads(),
            "messages": record_store.count_messages(),
        }
    finally:
        checkpoint_store.close()
        record_store.close()
        config_store.close()

    if json_output:
        print(json.dumps(info))
        return

    table = Table(title="Mail Sync Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in info.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@mail_app.command("test")
def test_connection(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Connect with the current settings and report IDLE support."""
    settings = _settings(json_output)
    config_store = EmailConfigStore(settings.storage.database_path)
    runtime = RuntimeSettings(settings, config_store)
    mailbox = runtime.mailbox()

    if not json_output:
        console.print(f"[bold blue]Testing IMAP connection to {mailbox.host}...[/bold blue]")
    try:
        report = MailboxFetcher(mailbox_provider=runtime.mailbox).test_connection()
    except Exception as exc:  # noqa: BLE001
        _fail(exc, json_output)
    finally:
        config_store.close()

    if json_output:
        print(json.dumps({"success": True, **report}))
        return
    console.print("[bold green]✓ Connection successful![/bold green]")
    console.print(f"Messages in {report['folder']}: {report['exists']}")
    console.print(f"IDLE supported: {'yes' if report['supports_idle'] else 'no'}")
    console.print(f"Connect time: {report['connect_seconds']:.3f}s")


# ---------------------------------------------------------------------------
# Configuration commands
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the stored IMAP configuration with the password masked."""
    settings = _settings(json_output)
    store = EmailConfigStore(settings.storage.database_path)
    try:
        stored = store.masked()
    finally:
        store.close()

    if json_output:
        print(json.dumps(stored))
        return
    if not stored:
        console.print("No stored configuration; IMAP_* environment variables apply.")
        return
    table = Table(title="Stored IMAP Configuration")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in stored.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@config_app.command("set")
def config_set(
    host: Optional[str] = typer.Option(None, "--host", help="IMAP hostname"),
    port: Optional[int] = typer.Option(None, "--port", help="IMAP port"),
    user: Optional[str] = typer.Option(None, "--user", help="Login name"),
    password: Optional[str] = typer.Option(None, "--password", help="Password or app password"),
    tls: Optional[bool] = typer.Option(None, "--tls/--no-tls", help="Use implicit TLS"),
    remember: bool = typer.Option(
        True, "--remember/--no-remember", help="Store the password in the database"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Store IMAP settings that override the environment."""
    settings = _settings(json_output)
    store = EmailConfigStore(settings.storage.database_path)
    try:
        current = store.load() or EmailConfig()
        update = EmailConfig(
            imap_host=host if host is not None else current.imap_host,
            imap_port=port if port is not None else current.imap_port,
            imap_user=user if user is not None else current.imap_user,
            imap_pass=password,
            imap_tls=tls if tls is not None else current.imap_tls,
            remember_credentials=remember,
        )
        store.save(update)
        masked = store.masked()
    except Exception as exc:  # noqa: BLE001
        _fail(exc, json_output)
    finally:
        store.close()

    if json_output:
        print(json.dumps({"success": True, "config": masked}))
    else:
        console.print("[bold green]✓ IMAP configuration saved[/bold green]")


__all__ = ["config_app", "mail_app"]
