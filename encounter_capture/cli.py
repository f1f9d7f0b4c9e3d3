"""Command Line Interface for Encounter-Capture.

This module provides a CLI using Typer for validating encounter records,
running the Save/Submit actions against the local store and remote service,
and inspecting or replaying the offline queue.

Security Impact:
    - Record contents are never printed, only keys, statuses and field labels
    - The API token is reported as configured or not, never shown
    - A failed local write always exits non-zero
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from encounter_capture import __version__
from encounter_capture.adapters.remote.payload_builder import read_payload
from encounter_capture.domain.encounter_record import EncounterRecord
from encounter_capture.domain.enums import OutcomeKind
from encounter_capture.domain.ports import StorageError
from encounter_capture.domain.services.resync import summarize_replay
from encounter_capture.domain.services.sync_orchestrator import SyncOutcome
from encounter_capture.domain.validation import (
    errors_for_toast,
    group_errors_by_section,
    validate,
    validation_summary_message,
)
from encounter_capture.infrastructure.config_manager import StoreConfig
from encounter_capture.infrastructure.logging_config import setup_logging
from encounter_capture.infrastructure.settings import settings
from encounter_capture.main import EncounterServices, build_services, create_store

# Initialize Typer app and Rich console
app = typer.Typer(
    name="encounter-capture",
    help="Encounter-Capture: offline-first encounter save and submit",
    add_completion=False
)
console = Console()

_state: dict = {"db_path": None}

FAILURE_KINDS = {
    OutcomeKind.LOCAL_WRITE_FAILED,
    OutcomeKind.VALIDATION_FAILED,
    OutcomeKind.SERVER_REJECTED,
}


def _store_config() -> StoreConfig:
    config = settings.store_config
    if _state["db_path"]:
        config = config.model_copy(update={"db_path": _state["db_path"]})
    return config


def _open_store():
    try:
        return create_store(_store_config())
    except (ValueError, StorageError) as e:
        console.print(f"[red]✗[/red] Failed to open local store: {str(e)}")
        raise typer.Exit(code=1)


def _services(offline: bool) -> EncounterServices:
    store = _open_store()
    try:
        return build_services(store=store, online=False if offline else None)
    except (ValueError, RuntimeError) as e:
        console.print(f"[red]✗[/red] Failed to initialize services: {str(e)}")
        raise typer.Exit(code=1)


def load_record(path: Path) -> EncounterRecord:
    """Load a record document, or a create/update payload carrying formData."""
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]✗[/red] Cannot read {path}: {str(e)}")
        raise typer.Exit(code=1)

    try:
        if isinstance(data, dict) and "formData" in data:
            return read_payload(data)
        return EncounterRecord.from_document(data)
    except PydanticValidationError as e:
        console.print(f"[red]✗[/red] {path} is not a valid encounter record: {e.error_count()} error(s)")
        raise typer.Exit(code=1)


def _print_errors(errors) -> None:
    table = Table(title="Fields needing attention")
    table.add_column("Section", style="cyan")
    table.add_column("Field")
    table.add_column("Message")
    for section, section_errors in group_errors_by_section(tuple(errors)).items():
        for error in section_errors:
            table.add_row(section.display_name, error.label, error.message)
    console.print(table)


def _print_outcome(outcome: SyncOutcome) -> None:
    if outcome.kind in FAILURE_KINDS:
        style = "red"
    elif outcome.kind in (OutcomeKind.SAVED, OutcomeKind.SUBMITTED):
        style = "green"
    else:
        style = "yellow"
    console.print(f"[{style}]{outcome.message}[/{style}]")

    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_row("Outcome:", outcome.kind.value)
    summary.add_row("Encounter:", outcome.record.storage_key)
    summary.add_row("Status:", outcome.record.status.value)
    if outcome.redirect_to:
        summary.add_row("Redirect to:", f"/encounters/{outcome.redirect_to}")
    if outcome.active_section:
        summary.add_row("Open section:", outcome.active_section.display_name)
    if outcome.navigate_away:
        summary.add_row("Navigate:", f"{settings.dashboard_route} after {outcome.navigate_delay_ms} ms")
    console.print(summary)

    if outcome.errors:
        _print_errors(outcome.errors)


async def _run(services: EncounterServices, action: str, record: EncounterRecord) -> SyncOutcome:
    async with services.remote:
        if action == "submit":
            return await services.orchestrator.submit(record)
        return await services.orchestrator.save(record)


def _run_action(action: str, record_file: Path, offline: bool, write_back: bool) -> None:
    record = load_record(record_file)
    services = _services(offline)
    try:
        outcome = asyncio.run(_run(services, action, record))
    finally:
        services.close()

    _print_outcome(outcome)
    if write_back and outcome.saved_locally:
        record_file.write_text(json.dumps(outcome.record.to_document(), indent=2))
        console.print(f"[dim]Updated {record_file} ({outcome.record.storage_key})[/dim]")

    if outcome.kind in FAILURE_KINDS:
        raise typer.Exit(code=1)


@app.command("validate")
def validate_command(
    record_file: Path = typer.Argument(..., help="Encounter record JSON file", exists=True),
    max_errors: int = typer.Option(0, "--max-errors", "-n", help="Show only the first N errors (0 = all)"),
) -> None:
    """Check a record against the required-field catalog without saving it."""
    record = load_record(record_file)
    result = validate(record)

    console.print(validation_summary_message(result))
    console.print(f"[dim]{result.completed_fields}/{result.total_fields} required fields complete[/dim]")

    if result.is_valid:
        console.print("[green]✓[/green] Ready to submit")
        return

    shown, hidden = errors_for_toast(result.errors, max_errors) if max_errors > 0 else (list(result.errors), 0)
    _print_errors(shown)
    if hidden:
        console.print(f"[dim]...and {hidden} more[/dim]")
    raise typer.Exit(code=1)


@app.command()
def save(
    record_file: Path = typer.Argument(..., help="Encounter record JSON file", exists=True),
    offline: bool = typer.Option(False, "--offline", help="Treat the remote service as unreachable"),
    write_back: bool = typer.Option(True, "--write-back/--no-write-back", help="Store the reconciled record back into the file"),
) -> None:
    """Save a draft locally, then create or update it on the server."""
    _run_action("save", record_file, offline, write_back)


@app.command()
def submit(
    record_file: Path = typer.Argument(..., help="Encounter record JSON file", exists=True),
    offline: bool = typer.Option(False, "--offline", help="Treat the remote service as unreachable"),
    write_back: bool = typer.Option(True, "--write-back/--no-write-back", help="Store the reconciled record back into the file"),
) -> None:
    """Validate and submit an encounter for review (queued when offline)."""
    _run_action("submit", record_file, offline, write_back)


@app.command()
def pending(
    show_all: bool = typer.Option(False, "--all", "-a", help="Include synced and retired envelopes"),
) -> None:
    """List offline envelopes waiting to be synchronized."""
    store = _open_store()
    try:
        summaries = store.list_summaries(include_retired=show_all)
        queued = store.count()
    finally:
        store.close()

    if not show_all:
        summaries = [s for s in summaries if s["offline_status"] != "synced"]

    table = Table(title=f"Offline envelopes ({queued} queued)")
    table.add_column("Key", style="cyan")
    table.add_column("Status")
    table.add_column("Submit")
    table.add_column("Saved at")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    for row in summaries:
        key = row["storage_key"]
        if row.get("superseded_by"):
            key = f"{key} -> {row['superseded_by']}"
        table.add_row(
            key,
            row["offline_status"],
            "yes" if row["attempted_submit"] else "no",
            str(row["saved_at"]),
            str(row["sync_attempts"]),
            row["last_error"] or "",
        )
    console.print(table)


async def _replay(services: EncounterServices, key: Optional[str]):
    async with services.remote:
        if key is not None:
            return [await services.resync.retry_single(key)]
        return await services.resync.replay_pending()


@app.command()
def sync(
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Retry a single envelope by key"),
) -> None:
    """Replay queued drafts and pending submissions against the server."""
    services = _services(offline=False)
    try:
        results = asyncio.run(_replay(services, key))
    finally:
        services.close()

    if results:
        table = Table(title="Replay results")
        table.add_column("Encounter", style="cyan")
        table.add_column("Type")
        table.add_column("Result")
        table.add_column("Server ID")
        for result in results:
            table.add_row(
                result.encounter_key,
                result.sync_type.value if result.sync_type else "-",
                f"[green]{result.message}[/green]" if result.success else f"[red]{result.message}[/red]",
                result.server_id or "",
            )
        console.print(table)

    console.print(summarize_replay(results))
    stats = services.resync.last_breaker_statistics
    if stats and stats["is_open"]:
        console.print(
            f"[yellow]Replay stopped early: {stats['failures_in_window']}/{stats['records_in_window']} "
            f"recent attempts failed ({stats['failure_rate']:.0f}%)[/yellow]"
        )
    if any(not result.success for result in results):
        raise typer.Exit(code=1)


@app.command()
def purge() -> None:
    """Delete synced envelopes and local ids retired by reconciliation."""
    store = _open_store()
    try:
        result = store.purge_synced()
    finally:
        store.close()

    if result.is_failure():
        console.print(f"[red]✗[/red] Purge failed: {result.error}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Purged {result.value} envelope(s)")


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    store_config = _store_config()
    remote_config = settings.remote_config
    sync_config = settings.sync_config

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Database Path:", store_config.db_path)
    info_table.add_row("Encryption at rest:", "Enabled" if store_config.encryption_enabled else "Disabled")
    info_table.add_row("Remote API:", remote_config.base_url)
    info_table.add_row("API token:", "configured" if remote_config.api_token else "not set")
    info_table.add_row("Request timeout:", f"{remote_config.timeout_seconds:.0f} s")
    info_table.add_row("Navigate delay:", f"{sync_config.navigate_delay_ms} ms")
    info_table.add_row(
        "Replay breaker:",
        f"{sync_config.failure_threshold_percent:.0f}% over {sync_config.window_size} results",
    )
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version information"),
    db_path: Optional[str] = typer.Option(None, "--db-path", help="DuckDB file (overrides EC_DB_PATH)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit structured JSON logs"),
) -> None:
    """Encounter-Capture: offline-first encounter save and submit."""
    if version:
        console.print(f"Encounter-Capture v{__version__}")
        raise typer.Exit()

    _state["db_path"] = db_path
    use_json = json_logs or settings.log_json
    if verbose or use_json:
        setup_logging(use_json=use_json, log_level="DEBUG" if verbose else settings.log_level)


if __name__ == "__main__":
    app()
