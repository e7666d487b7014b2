"""
CLI interface for Leadline.
Provides commands for running the server and operating the pipeline by hand.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from leadline.config import get_settings
from leadline.logging_config import setup_logging

app = typer.Typer(
    name="leadline",
    help="Missed-call intake, transcription and client reminder pipeline",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


@app.command()
def serve(
    worker: bool = typer.Option(True, help="Run the reminder worker inside the server process"),
):
    """Run the HTTP server (telephony webhooks + jobs API)."""
    import uvicorn

    from leadline.server import create_app

    settings = get_settings()
    settings.reminder_worker_enabled = worker
    setup_logging(settings.log_dir, json_logs=True)

    console.print(f"\n[green]Leadline server running on {settings.host}:{settings.port}[/green]")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level="info")


@app.command("process-reminders")
def process_reminders():
    """Run one reminder batch (and the recording purge sweep) now."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from leadline.services import build_services
        from leadline.worker import ReminderWorker

        services = await build_services(settings)
        try:
            stats = await ReminderWorker(services).run_once()
            console.print("\n[green]✓ Reminder batch complete[/green]")
            for k, v in (stats or {}).items():
                console.print(f"  {k}: {v}")
        finally:
            await services.close()

    _run(_do())


@app.command("schedule-reminders")
def schedule_reminders(job_id: str = typer.Argument(..., help="Job ID")):
    """Recompute the pending reminders for one job."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from leadline.services import build_services

        services = await build_services(settings)
        try:
            result = await services.reminders.schedule_reminders_for_job(job_id)
            console.print(f"\n[green]✓ {result.message}[/green]")
            if result.reminders:
                table = Table(title=f"Reminders for {job_id}")
                table.add_column("Kind", style="cyan")
                table.add_column("Scheduled for (UTC)", style="green")
                for r in result.reminders:
                    table.add_row(r.kind.value, r.scheduled_for.isoformat())
                console.print(table)
        finally:
            await services.close()

    _run(_do())


@app.command("retry-call")
def retry_call(call_sid: str = typer.Argument(..., help="Provider CallSid")):
    """Retry transcription for a call in the failed state."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from leadline.errors import LeadlineError
        from leadline.services import build_services

        services = await build_services(settings)
        try:
            outcome = await services.transcription.retry_transcription(call_sid)
        except LeadlineError as e:
            console.print(f"\n[red]✗ {e.message}[/red]")
            raise typer.Exit(code=1)
        finally:
            await services.close()
        console.print(f"\n[green]✓ {outcome.status}[/green] job={outcome.job_id or '-'}")

    _run(_do())


@app.command("purge-recordings")
def purge_recordings():
    """Delete stored audio past its retention window."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from leadline.models import utcnow
        from leadline.recording import purge_expired_recordings
        from leadline.services import build_services

        services = await build_services(settings)
        try:
            count = await purge_expired_recordings(services.db, services.recording_store, utcnow())
            console.print(f"\n[green]✓ Purged {count} recording(s)[/green]")
        finally:
            await services.close()

    _run(_do())


@app.command("reminder-stats")
def reminder_stats(org_id: str = typer.Argument(..., help="Organization ID")):
    """Show reminder totals by status and kind."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from leadline.services import build_services

        services = await build_services(settings)
        try:
            stats = await services.reminders.get_reminder_stats(org_id)

            table = Table(title=f"Reminders: {org_id}")
            table.add_column("Status", style="cyan")
            table.add_column("Count", style="green")
            for key in ("total", "pending", "sent", "failed", "cancelled"):
                table.add_row(key, str(stats[key]))
            console.print(table)

            if stats["by_kind"]:
                kind_table = Table(title="By Kind")
                kind_table.add_column("Kind", style="cyan")
                kind_table.add_column("Total", style="green")
                kind_table.add_column("Sent", style="green")
                kind_table.add_column("Failed", style="red")
                for kind, row in sorted(stats["by_kind"].items()):
                    kind_table.add_row(kind, str(row["total"]), str(row["sent"]), str(row["failed"]))
                console.print(kind_table)
        finally:
            await services.close()

    _run(_do())


@app.command("review-queue")
def review_queue(owner: Optional[str] = typer.Option(None, help="Only calls for this user ID")):
    """List calls whose transcript could not be turned into a job."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from leadline.database import Database
        from leadline.phone_utils import format_for_display

        db = Database(settings.database_path)
        await db.connect()
        try:
            calls = await db.list_calls_needing_review(owner)
            table = Table(title="Calls needing review")
            table.add_column("CallSid", style="cyan")
            table.add_column("From")
            table.add_column("Status")
            table.add_column("Reason", style="yellow")
            for c in calls:
                table.add_row(
                    c.call_sid,
                    format_for_display(c.from_number),
                    c.transcription_status.value,
                    c.review_reason,
                )
            console.print(table)
        finally:
            await db.close()

    _run(_do())


@app.command("create-token")
def create_token(user_id: str = typer.Argument(..., help="User ID for the token's sub claim")):
    """Issue a bearer token for the jobs API (requires JWT_SECRET)."""
    from leadline.auth import AuthManager

    settings = get_settings()
    if not settings.jwt_secret:
        console.print("[red]✗ JWT_SECRET is not set[/red]")
        raise typer.Exit(code=1)
    console.print(AuthManager(settings.jwt_secret).create_access_token(user_id))


if __name__ == "__main__":
    app()
