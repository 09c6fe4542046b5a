"""
Command Line Interface for GenProof.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import load_settings
from ..errors import GenproofError
from ..logging_config import configure_logging
from ..services import build_services

app = typer.Typer(help="GenProof - asynchronous proof generation pipeline")
console = Console()

STATUS_STYLE = {
    "queued": "yellow",
    "processing": "cyan",
    "complete": "green",
    "failed": "red",
}


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Override GENPROOF_LOG_LEVEL"),
    log_format: Optional[str] = typer.Option(None, help="json or console"),
):
    """Configure logging before any command runs."""
    settings = load_settings()
    configure_logging(log_level or settings.log_level, log_format or settings.log_format)


@app.command()
def serve(
    port: int = typer.Option(8000, help="Port to run the API server on"),
    host: str = typer.Option("0.0.0.0", help="Host to bind the server to"),
):
    """Run the HTTP API."""
    from ..api import create_app

    services = build_services()
    rprint(Panel.fit(f"Starting GenProof API on http://{host}:{port}", style="bold blue"))
    uvicorn.run(create_app(services), host=host, port=port)


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(None, help="Override worker concurrency"),
    poll_interval: Optional[float] = typer.Option(None, help="Override poll interval"),
):
    """Run the worker pool until SIGINT/SIGTERM, then drain."""
    from ..worker.loop import run_worker

    console.print(Panel.fit("Starting GenProof worker pool", style="bold blue"))
    stats = run_worker(concurrency=concurrency, poll_interval=poll_interval)
    console.print(f"Stopped: processed={stats['processed']} failed={stats['failed']}")


@app.command()
def reconcile(
    events: Path = typer.Argument(..., help="JSON-lines file of ledger events"),
    to_block: Optional[int] = typer.Option(None, help="Last block to apply"),
):
    """Apply an exported ledger event log from the persisted cursor."""
    from ..reconciler import LedgerEvent, MemoryLedgerClient

    history = [
        LedgerEvent.model_validate(json.loads(line))
        for line in events.read_text().splitlines()
        if line.strip()
    ]

    async def _run():
        services = build_services()
        reconciler = services.reconciler(MemoryLedgerClient(history))
        try:
            await reconciler.backfill(to_block=to_block)
            await reconciler.stop()
        finally:
            await services.close()
        return reconciler

    reconciler = asyncio.run(_run())
    stats = reconciler.stats()

    table = Table(title="Reconciliation", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    for key in ("consumer", "applied", "skipped", "dead_letters", "deferred"):
        table.add_row(key, str(stats[key]))
    console.print(table)

    for letter in reconciler.dead_letters:
        console.print(
            f"[red]dead letter[/red] {letter.event.tx_hash} "
            f"{letter.event.type.value}: {letter.code} {letter.error}"
        )
    for shard, event in sorted(reconciler.stalled_shards().items()):
        console.print(
            f"[yellow]shard {shard} stalled[/yellow] at block {event.block_number} "
            f"{event.tx_hash}; rerun to replay from there"
        )
    if reconciler.dead_letters:
        raise typer.Exit(code=1)


@app.command()
def submit(
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    trait_type: str = typer.Argument(..., help="BRCA1, BRCA2 or CYP2D6"),
    threshold: Optional[float] = typer.Option(None, help="Optional threshold"),
):
    """Submit a proof job."""

    async def _run():
        services = build_services()
        try:
            job = await services.submitter.submit(subject_id, trait_type, threshold)
            position = await services.submitter.queue_position(job.id)
            return job, position, services.submitter.estimated_time(job.trait_type)
        finally:
            await services.close()

    try:
        job, position, estimate = asyncio.run(_run())
    except GenproofError as e:
        console.print(f"[red]{e.code}[/red]: {e.message}")
        raise typer.Exit(code=1)

    console.print(f"Job [bold]{job.id}[/bold] is {job.status.value}")
    console.print(f"Queue position: {position}, estimated time: {estimate:.0f}s")


@app.command("pin-data")
def pin_data(
    subject_id: str = typer.Argument(..., help="Subject identifier"),
    data_file: Path = typer.Argument(..., help="JSON file with the subject's data"),
):
    """Pin a subject's data so workers can retrieve it."""
    try:
        data = json.loads(data_file.read_text())
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read {data_file}[/red]: {e}")
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        console.print("[red]Subject data must be a JSON object[/red]")
        raise typer.Exit(code=1)

    async def _run():
        services = build_services()
        try:
            return await services.pinning.pin_subject_data(subject_id, data)
        finally:
            await services.close()

    try:
        result = asyncio.run(_run())
    except GenproofError as e:
        console.print(f"[red]{e.code}[/red]: {e.message}")
        raise typer.Exit(code=1)

    console.print(f"Pinned [bold]{result.content_id}[/bold] for {subject_id}")
    console.print(f"Commitment: {result.record.commitment_hash}")
    if not result.durable:
        console.print("[yellow]Pin is not durable (local only)[/yellow]")


@app.command()
def status(job_id: str = typer.Argument(..., help="Job identifier")):
    """Show a job's status."""

    async def _run():
        services = build_services()
        try:
            return await services.submitter.get_status(job_id)
        finally:
            await services.close()

    try:
        job = asyncio.run(_run())
    except GenproofError as e:
        console.print(f"[red]{e.code}[/red]: {e.message}")
        raise typer.Exit(code=1)

    style = STATUS_STYLE.get(job.status.value, "white")
    table = Table(title=f"Job {job.id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", f"[{style}]{job.status.value}[/{style}]")
    table.add_row("Progress", f"{job.progress}%")
    table.add_row("Stage", job.stage or "")
    table.add_row("Subject", job.subject_id)
    table.add_row("Trait", job.trait_type)
    if job.result:
        table.add_row("Content hash", job.result.content_hash)
        table.add_row("Content id", job.result.content_id or "")
    if job.error:
        table.add_row("Error", f"{job.error_code}: {job.error}")
    console.print(table)


@app.command("pin-stats")
def pin_stats():
    """Show pinning statistics."""

    async def _run():
        services = build_services()
        try:
            return await services.pinning.stats()
        finally:
            await services.close()

    result = asyncio.run(_run())
    console.print(f"Outcome: {result.outcome.value}")
    if result.value:
        console.print(f"Pins: {result.value['count']}, size: {result.value['size']} bytes")
    if result.error:
        console.print(f"[yellow]{result.error}[/yellow]")


@app.command()
def queue():
    """Show jobs waiting in the queue."""

    async def _run():
        services = build_services()
        try:
            return await services.job_store.queued_ids()
        finally:
            await services.close()

    queued = asyncio.run(_run())
    console.print(f"Queued jobs: {len(queued)}")
    for position, job_id in enumerate(queued, start=1):
        console.print(f"  {position}. {job_id}")


@app.command()
def grants(subject_id: str = typer.Argument(..., help="Subject identifier")):
    """List reconciled access grants for a subject."""
    from ..db.repositories import LedgerStateRepository

    services = build_services()
    with services.database.transaction() as session:
        rows = [g.to_dict() for g in LedgerStateRepository(session).list_grants(subject_id)]
    asyncio.run(services.close())

    table = Table(title=f"Access grants for {subject_id}", show_header=True, header_style="bold magenta")
    table.add_column("Grantee", style="cyan")
    table.add_column("Scopes")
    table.add_column("Expires")
    table.add_column("Status")
    for row in rows:
        status = "[red]revoked[/red]" if row["revoked"] else "[green]active[/green]"
        table.add_row(
            row["grantee_id"], ", ".join(row["scopes"]), row["expires_at"] or "never", status
        )
    console.print(table)


@app.command()
def purge():
    """Delete persisted artifacts past their retention window."""
    from ..db.repositories import ArtifactRepository

    services = build_services()
    with services.database.transaction() as session:
        removed = ArtifactRepository(session).purge_expired()
    asyncio.run(services.close())
    console.print(f"Purged {removed} expired artifacts")


@app.command("init-db")
def init_db():
    """Create database tables (development; use alembic in production)."""
    settings = load_settings()
    services = build_services(settings)
    services.database.create_all()
    asyncio.run(services.close())
    console.print("Database initialized")


if __name__ == "__main__":
    app()
