"""Report Queue CLI - Main Entry Point"""

import asyncio
import json
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .client import ReportQueueClient, ReportQueueClientError
from .formatting import (
    create_stats_table,
    create_status_panel,
    print_error,
    print_info,
    print_success,
)

console = Console()

app = typer.Typer(
    name="reportq",
    help="📄 Report Queue - asynchronous report generation",
    rich_markup_mode="rich",
)

ApiUrlOption = typer.Option(
    None, "--api-url", envvar="REPORTQ_API_URL", help="Base URL of the Report Queue API"
)


def _parse_payload(payload: str | None) -> dict | None:
    if payload is None:
        return None
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"payload is not valid JSON: {e}") from None
    if not isinstance(parsed, dict):
        raise typer.BadParameter("payload must be a JSON object")
    return parsed


@app.command()
def submit(
    job_type: str = typer.Argument(..., help="Job type, e.g. sales_summary"),
    payload: Optional[str] = typer.Option(
        None, "--payload", "-p", help="Job payload as a JSON object"
    ),
    api_url: Optional[str] = ApiUrlOption,
):
    """📨 Submit a report job"""
    body = _parse_payload(payload)

    try:
        with ReportQueueClient(api_url) as client:
            result = client.submit_job(job_type, body)
    except ReportQueueClientError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {result.get('job_id')} accepted ({result.get('status')})")


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job ID returned by submit"),
    api_url: Optional[str] = ApiUrlOption,
):
    """🔎 Show the status of a job"""
    try:
        with ReportQueueClient(api_url) as client:
            job = client.get_job_status(job_id)
    except ReportQueueClientError as e:
        print_error(f"Failed to get job status: {e}")
        raise typer.Exit(1) from None

    console.print(create_status_panel(job))


@app.command()
def stats(api_url: Optional[str] = ApiUrlOption):
    """📊 Show job counts by status"""
    try:
        with ReportQueueClient(api_url) as client:
            data = client.get_stats()
    except ReportQueueClientError as e:
        print_error(f"Failed to get job stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_table(data))


@app.command()
def health(api_url: Optional[str] = ApiUrlOption):
    """💓 Check API, database and broker connectivity"""
    try:
        with ReportQueueClient(api_url) as client:
            data = client.health_check()
    except ReportQueueClientError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            "🚫 [red]Connection Failed[/red]\n\n"
            "Make sure the Report Queue API is running, or point the CLI at it with\n"
            "[cyan]--api-url[/cyan] / [cyan]REPORTQ_API_URL[/cyan]",
            title="Connection Error",
            border_style="red",
        ))
        raise typer.Exit(1) from None

    database = data.get("database") or {}
    broker = data.get("broker") or {}
    healthy = bool(data.get("ok"))
    console.print(Panel(
        f"{'🚀 [green]Healthy[/green]' if healthy else '⚠ [yellow]Degraded[/yellow]'}\n\n"
        f"• Version: [cyan]{data.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{data.get('environment', 'unknown')}[/yellow]\n"
        f"• Database: {_connected(database.get('connected'))}\n"
        f"• Broker: {_connected(broker.get('connected'))}",
        title="System Status",
        border_style="green" if healthy else "yellow",
    ))
    if not healthy:
        raise typer.Exit(1)


def _connected(flag: bool | None) -> str:
    return "[green]connected[/green]" if flag else "[red]unavailable[/red]"


@app.command()
def worker():
    """⚙️ Run a job processor until interrupted"""
    print_info("Starting job processor (Ctrl+C to stop)")
    asyncio.run(_run_worker())
    print_success("Job processor stopped")


async def _run_worker() -> None:
    from reportq.config.logging import setup_logging
    from reportq.config.settings import get_settings
    from reportq.infra.broker import RabbitMQBroker
    from reportq.infra.database import Database
    from reportq.v1.jobs import registry_init  # noqa: F401
    from reportq.v1.jobs.store import SqlStatusStore
    from reportq.v1.jobs.worker import JobProcessor

    settings = get_settings()
    setup_logging(settings)

    database = Database(settings)
    if settings.database_auto_create:
        await database.create_schema()
    broker = RabbitMQBroker.from_settings(settings)
    await broker.connect()

    processor = JobProcessor(settings, SqlStatusStore(database), broker)

    loop = asyncio.get_running_loop()
    stop_tasks: set[asyncio.Task] = set()

    def request_stop() -> None:
        task = loop.create_task(processor.stop())
        stop_tasks.add(task)
        task.add_done_callback(stop_tasks.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop)

    try:
        await processor.start()
    finally:
        await broker.close()
        await database.close()


def _version_callback(value: bool):
    if value:
        from . import __version__

        console.print(f"Report Queue CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """
    📄 Report Queue CLI

    Submit report jobs, inspect their status and run job processors.
    """


if __name__ == "__main__":
    app()
