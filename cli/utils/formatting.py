"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "blue",
    "paused": "magenta",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "dead_letter": "bold red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def format_progress(progress: dict[str, Any]) -> str:
    total = progress.get("total", 0)
    if not total:
        return "—"
    done = progress.get("completed", 0)
    failed = progress.get("failed", 0)
    text = f"{done}/{total} ({progress.get('percentage', 0):.0f}%)"
    if failed:
        text += f" [red]{failed} failed[/red]"
    return text


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="center", style="yellow")
    table.add_column("Progress", justify="right")
    table.add_column("Retries", justify="center")
    table.add_column("Created", justify="left", style="dim")

    for job in jobs:
        metadata = job.get("metadata", {})
        table.add_row(
            job.get("id", "")[:8],  # Short ID
            job.get("type", ""),
            format_status(job.get("status", "")),
            job.get("priority", ""),
            format_progress(job.get("progress", {})),
            f"{metadata.get('retry_count', 0)}/{metadata.get('max_retries', 0)}",
            (job.get("timestamps", {}).get("created") or "")[:19],
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for a single job"""
    metadata = job.get("metadata", {})
    timestamps = job.get("timestamps", {})

    lines = [
        f"• Type: [magenta]{job.get('type')}[/magenta]",
        f"• Status: {format_status(job.get('status', ''))}",
        f"• Priority: [yellow]{job.get('priority')}[/yellow]",
        f"• Workspace: [blue]{job.get('workspace_id')}[/blue]",
        f"• Progress: {format_progress(job.get('progress', {}))}",
        f"• Retries: {metadata.get('retry_count', 0)}/{metadata.get('max_retries', 0)}",
        f"• Created: {timestamps.get('created') or '—'}",
        f"• Started: {timestamps.get('started') or '—'}",
        f"• Completed: {timestamps.get('completed') or '—'}",
    ]
    if job.get("cancel_requested"):
        lines.append("• [yellow]Cancellation requested[/yellow]")

    error = job.get("error")
    if error:
        lines.append(f"\n[red]Error ({error.get('code')}): {error.get('message')}[/red]")

    border = "red" if job.get("status") in ("failed", "dead_letter") else "cyan"
    return Panel("\n".join(lines), title=f"Job {job.get('id')}", border_style=border)


def create_stats_panel(stats: dict[str, Any], queue: dict[str, Any]) -> Panel:
    """Create formatted panel for job statistics"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"  {format_status(status)}: {count}" for status, count in sorted(by_status.items())
    )
    avg_runtime = stats.get("avg_runtime_seconds")

    content = (
        f"📊 [bold blue]Job Statistics[/bold blue]\n\n"
        f"• Total jobs: [cyan]{stats.get('total_jobs', 0)}[/cyan]\n"
        f"• Queue depth: [yellow]{stats.get('queue_depth', 0)}[/yellow]\n"
        f"• Dead letter: [red]{stats.get('dead_letter', 0)}[/red]\n"
        f"• Avg runtime: {f'{avg_runtime:.2f}s' if avg_runtime is not None else '—'}\n"
        f"• Slots: {queue.get('running', 0)} running, {queue.get('paused', 0)} paused"
        f" of {queue.get('max_concurrency', 0)}\n\n"
        f"By status:\n{status_lines or '  —'}"
    )

    return Panel(content, title="Job Overview", border_style="green")
