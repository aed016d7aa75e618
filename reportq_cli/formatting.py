"""Rich formatting helpers for CLI output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_status_panel(job: dict[str, Any]) -> Panel:
    """Panel for a single job status projection"""
    status = job.get("status", "unknown")
    style = STATUS_STYLES.get(status, "white")

    lines = [
        f"• Job ID: [cyan]{job.get('job_id', '')}[/cyan]",
        f"• Status: [{style}]{status}[/{style}]",
        f"• Retries: [yellow]{job.get('retry_count', 0)}[/yellow]",
    ]
    if job.get("artifact_reference"):
        lines.append(f"• Report: [blue]{job['artifact_reference']}[/blue]")
    if job.get("failure_reason"):
        lines.append(f"• Failure: [red]{job['failure_reason']}[/red]")

    return Panel("\n".join(lines), title="Job Status", border_style=style)


def create_stats_table(stats: dict[str, Any]) -> Table:
    """Table of job counts by status"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("Status", justify="left", style="bold")
    table.add_column("Count", justify="right", style="cyan")

    by_status = stats.get("by_status", {})
    for status, style in STATUS_STYLES.items():
        table.add_row(f"[{style}]{status}[/{style}]", str(by_status.get(status, 0)))

    table.add_section()
    table.add_row("in flight", str(stats.get("in_flight", 0)))
    table.add_row("total", str(stats.get("total_jobs", 0)))

    return table
