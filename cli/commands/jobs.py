"""Jobs Commands - Inspect and operate background jobs"""

from collections.abc import Callable

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import DutyJobsAPIError, DutyJobsClient
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job management commands")


def get_client() -> DutyJobsClient:
    return DutyJobsClient()


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs, newest first"""
    try:
        with get_client() as client:
            page = client.list_jobs(status=status, type=type, limit=limit, offset=offset)
    except DutyJobsAPIError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = page.get("jobs", [])
    total = page.get("total", len(jobs))

    if not jobs:
        console.print(
            Panel(
                "📭 [yellow]No jobs found![/yellow]\n\n"
                f"• Status: {', '.join(status) if status else 'any'}\n"
                f"• Type: {type or 'any'}",
                title="Empty Results",
                border_style="yellow",
            )
        )
        return

    console.print(create_jobs_table(jobs))
    console.print(f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs")

    if offset + limit < total:
        console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID to show")):
    """🔍 Show details of a job"""
    try:
        with get_client() as client:
            job = client.get_job(job_id)
    except DutyJobsAPIError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))


@app.command("stats")
def job_stats():
    """📊 Show job statistics and queue status"""
    try:
        with get_client() as client:
            stats = client.job_stats()
            queue = client.queue_status()
    except DutyJobsAPIError as e:
        print_error(f"Failed to get job stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_panel(stats, queue))


def _run_action(
    verb: str, job_id: str, action: Callable[[DutyJobsClient], dict]
) -> None:
    try:
        with get_client() as client:
            job = action(client)
    except DutyJobsAPIError as e:
        print_error(f"Failed to {verb} job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job_id} is now {job.get('status')}")
    if job.get("cancel_requested") and job.get("status") == "running":
        console.print("💡 The job stops at its next checkpoint")


@app.command("retry")
def retry_job(
    job_id: str = typer.Argument(..., help="Job ID to retry"),
    priority: str | None = typer.Option(
        None, "--priority", "-p", help="Override the job's priority"
    ),
):
    """🔁 Retry a failed, dead-lettered or cancelled job"""
    _run_action("retry", job_id, lambda client: client.retry_job(job_id, priority))


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID to cancel")):
    """🛑 Cancel a pending, running or paused job"""
    _run_action("cancel", job_id, lambda client: client.cancel_job(job_id))


@app.command("pause")
def pause_job(job_id: str = typer.Argument(..., help="Job ID to pause")):
    """⏸ Pause a running job at its next checkpoint"""
    _run_action("pause", job_id, lambda client: client.pause_job(job_id))


@app.command("resume")
def resume_job(job_id: str = typer.Argument(..., help="Job ID to resume")):
    """▶ Resume a paused job"""
    _run_action("resume", job_id, lambda client: client.resume_job(job_id))
