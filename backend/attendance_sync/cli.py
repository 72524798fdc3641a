"""Command line entry point for attendance-sync."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from attendance_sync.core.config import settings
from attendance_sync.core.database import engine, init_db
from attendance_sync.core.logging import configure_logging
from attendance_sync.integrations.sis.error_handler import ConfigurationError
from attendance_sync.models.sync_metadata import SyncStatus
from attendance_sync.schemas.sync import SyncOptions, SyncSummary
from attendance_sync.tasks.sync_tasks import SyncTaskManager

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2

DATE_FORMATS = ["%Y-%m-%d"]

app = typer.Typer(
    name="attendance-sync",
    help="Resumable school-year attendance sync from the Aeries SIS.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)


def print_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def print_summary(summary: SyncSummary) -> None:
    style = {
        SyncStatus.COMPLETED: "green",
        SyncStatus.CANCELLED: "yellow",
    }.get(summary.status, "red")
    console.print(
        f"Sync [bold]{summary.operation_id}[/bold] finished: "
        f"[{style}]{summary.status.value.upper()}[/{style}] in {summary.elapsed_seconds:.1f}s"
    )
    if summary.resumed_from:
        console.print(f"Resumed from {summary.resumed_from}")

    counters = Table(title="Records", show_header=True)
    counters.add_column("Metric")
    counters.add_column("Count", justify="right")
    for name, value in summary.counters.model_dump().items():
        counters.add_row(name.replace("_", " "), str(value))
    console.print(counters)

    if summary.error_types:
        errors = Table(title="Errors", show_header=True)
        errors.add_column("Stage:Type")
        errors.add_column("Count", justify="right")
        for key, count in sorted(summary.error_types.items()):
            errors.add_row(key, str(count))
        console.print(errors)

    if summary.fatal_error:
        console.print(f"[bold red]Fatal:[/bold red] {summary.fatal_error['message']}")
    if summary.resume_checkpoint is not None:
        console.print(
            f"Resume after batch {summary.resume_checkpoint.last_completed_batch} with: "
            f"[bold]attendance-sync resume {summary.operation_id}[/bold]"
        )


async def _run(options: SyncOptions) -> SyncSummary:
    await init_db()
    try:
        return await SyncTaskManager().run_sync(options, handle_signals=True)
    finally:
        await engine.dispose()


def _execute(options: SyncOptions, summary_json: Optional[Path]) -> None:
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    try:
        summary = asyncio.run(_run(options))
    except ConfigurationError as e:
        print_error(e.message)
        raise typer.Exit(code=EXIT_CONFIGURATION_ERROR)

    print_summary(summary)
    if summary_json:
        summary_json.write_text(summary.model_dump_json(indent=2))
        console.print(f"Summary written to {summary_json}")

    raise typer.Exit(code=EXIT_OK if summary.succeeded else EXIT_FAILED)


def _as_date(value: Optional[datetime]):
    return value.date() if value else None


@app.command("sync")
def sync(
    start: Optional[datetime] = typer.Option(
        None, "--start", formats=DATE_FORMATS, help="First date to sync (default: SYNC_START_DATE)"
    ),
    end: Optional[datetime] = typer.Option(
        None, "--end", formats=DATE_FORMATS, help="Last date to sync (default: SYNC_END_DATE)"
    ),
    school: Optional[List[str]] = typer.Option(
        None, "--school", "-s", help="School code to sync (can specify multiple times)"
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1, help="Records per batch"),
    chunk_days: Optional[int] = typer.Option(None, "--chunk-days", min=1, help="Days per date chunk"),
    checkpoint_every: Optional[int] = typer.Option(
        None, "--checkpoint-every", min=1, help="Persist a checkpoint every N batches"
    ),
    resume: Optional[str] = typer.Option(
        None, "--resume", help="Resume the given operation id from its checkpoint"
    ),
    summary_json: Optional[Path] = typer.Option(
        None, "--summary-json", help="Write the run summary as JSON to this file"
    ),
) -> None:
    """Sync attendance records for a date range.

    Exits 0 when the operation completed, 1 when it failed or was cancelled,
    and 2 when the configuration is invalid.
    """
    options = SyncOptions(
        start_date=_as_date(start),
        end_date=_as_date(end),
        batch_size=batch_size,
        chunk_days=chunk_days,
        checkpoint_every=checkpoint_every,
        school_codes=school or None,
        resume_from=resume,
    )
    _execute(options, summary_json)


@app.command("resume")
def resume_operation(
    operation_id: str = typer.Argument(..., help="Operation id to resume"),
    checkpoint_every: Optional[int] = typer.Option(
        None, "--checkpoint-every", min=1, help="Persist a checkpoint every N batches"
    ),
    summary_json: Optional[Path] = typer.Option(
        None, "--summary-json", help="Write the run summary as JSON to this file"
    ),
) -> None:
    """Resume an operation from its last checkpoint with its original parameters."""
    _execute(SyncOptions(resume_from=operation_id, checkpoint_every=checkpoint_every), summary_json)


async def _history(limit: int, status: Optional[SyncStatus]):
    await init_db()
    try:
        return await SyncTaskManager().history(limit=limit, status=status)
    finally:
        await engine.dispose()


@app.command("history")
def history(
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of operations to show"),
    status: Optional[SyncStatus] = typer.Option(None, "--status", help="Only show this status"),
) -> None:
    """Show recent sync operations, most recent first."""
    operations = asyncio.run(_history(limit, status))
    if not operations:
        console.print("No sync operations recorded")
        return

    table = Table(title="Sync operations", show_header=True)
    for column in ("Operation", "Status", "Range", "Batch", "Succeeded", "Failed", "Started", "Resumed from"):
        table.add_column(column)
    for operation in operations:
        table.add_row(
            operation.operation_id,
            operation.status.value,
            f"{operation.start_date} .. {operation.end_date}",
            str(operation.last_completed_batch or 0),
            str(operation.records_succeeded or 0),
            str(operation.records_failed or 0),
            operation.started_at.strftime("%Y-%m-%d %H:%M") if operation.started_at else "-",
            operation.resumed_from or "",
        )
    console.print(table)


@app.command("init-db")
def init_database() -> None:
    """Create the local database tables."""
    asyncio.run(init_db())
    console.print(f"[green]Database initialized[/green] at {settings.DATABASE_URL}")


@app.command("serve")
def serve(
    host: str = typer.Option(settings.HOST, "--host", help="Bind address"),
    port: int = typer.Option(settings.PORT, "--port", help="Bind port"),
) -> None:
    """Serve the sync HTTP API."""
    uvicorn.run("attendance_sync.main:app", host=host, port=port, log_level=settings.LOG_LEVEL.lower())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
