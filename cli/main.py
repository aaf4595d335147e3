"""Duty Jobs CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .commands import config, jobs
from .utils.formatting import print_error, print_info

console = Console()

# Create main Typer app
app = typer.Typer(
    name="dutyjobs",
    help="Duty Jobs - background job engine operator CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check engine status and connectivity"""
    try:
        with jobs.get_client() as client:
            base_url = client.api.base_url
            print_info(f"Checking connection to: {base_url}")
            health = client.health_check()
    except jobs.DutyJobsAPIError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                "🚫 [red]Connection Failed[/red]\n\n"
                "Make sure the Duty Jobs API is running, or update its URL with:\n"
                "[cyan]dutyjobs config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    engine = health.get("engine", {})
    queue = engine.get("queue", {})
    running = engine.get("running", False)

    console.print(
        Panel(
            f"{'🚀 [green]Engine running[/green]' if running else '⏹ [red]Engine stopped[/red]'}\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Pending: {queue.get('pending', 0)} (+{queue.get('delayed', 0)} in backoff)\n"
            f"• Running: {queue.get('running', 0)}/{queue.get('max_concurrency', 0)}\n"
            f"• Handlers: {', '.join(engine.get('registered_handlers', [])) or '—'}",
            title="System Status",
            border_style="green" if running else "red",
        )
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
):
    """
    Duty Jobs CLI

    Inspect, retry, cancel, pause and resume background jobs through the
    engine's HTTP API.
    """
    if version:
        from . import __version__

        console.print(f"Duty Jobs CLI v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


if __name__ == "__main__":
    app()
