"""
CLI Utilities for DockVault

Rich-based helpers for consistent CLI output.
"""

from typing import Callable, List, Optional, Tuple

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table

from ..types import JobOutcome, JobRecord

console = Console()

OUTCOME_STYLES = {
    JobOutcome.SUCCEEDED: "green",
    JobOutcome.FAILED: "red",
    JobOutcome.ABORTED: "yellow",
}


def print_header(title: str, subtitle: str = ""):
    """Boxed section title, used at the top of listing commands."""
    body = f"[bold cyan]{escape(title)}[/bold cyan]"
    if subtitle:
        body += f"\n[dim]{escape(subtitle)}[/dim]"
    console.print(Panel(body, border_style="cyan"))


def _status_line(mark: str, style: str, message: str) -> None:
    console.print(f"[{style}]{mark}[/{style}] {escape(message)}")


def print_success(message: str):
    _status_line("✓", "green", message)


def print_error(message: str):
    _status_line("✗", "red", message)


def print_warning(message: str):
    _status_line("⚠", "yellow", message)


def print_info(message: str):
    _status_line("→", "cyan", message)


def create_table(title: str, columns: List[Tuple[str, str, Optional[int]]]) -> Table:
    """
    Table with a bold header row.

    Args:
        title: Caption above the table, may be empty
        columns: ``(header, style, width)`` per column; ``None`` width lets Rich size it
    """
    table = Table(title=title or None, show_header=True, header_style="bold cyan")
    for header, style, width in columns:
        table.add_column(header, style=style, width=width)
    return table


def _key_value_table() -> Table:
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="cyan", width=16)
    table.add_column("Value", style="white")
    return table


def prompt_confirm(message: str, default: bool = False) -> bool:
    return Confirm.ask(message, default=default, console=console)


def with_spinner(message: str, func: Callable, *args, **kwargs):
    """Run ``func`` while a transient spinner shows ``message``; returns its result."""
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(description=message, total=None)
        return func(*args, **kwargs)


def format_size(size: Optional[int]) -> str:
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def print_job_record(record: JobRecord) -> None:
    """Summary panel and capture table for one finished job."""
    style = OUTCOME_STYLES.get(record.outcome, "white")
    outcome = record.outcome.value if record.outcome else record.state.value

    table = _key_value_table()
    table.add_row("Target", escape(record.target_id))
    table.add_row("Job", record.job_id)
    table.add_row("Outcome", f"[{style}]{outcome.upper()}[/{style}]")
    table.add_row("Duration", f"{record.duration_seconds:.1f}s")
    if record.archive_name:
        table.add_row("Archive", escape(record.archive_location or f"{record.archive_name} (not stored)"))
    if record.error:
        table.add_row("Failed phase", record.error.phase)
        table.add_row("Cause", escape(f"{record.error.type}: {record.error.message}"))
    if record.resume_error:
        table.add_row("Resume error", escape(record.resume_error))
    if record.attempts:
        table.add_row("Attempts", ", ".join(f"{k}={v}" for k, v in sorted(record.attempts.items())))
    console.print(Panel.fit(table, title=f"[bold {style}]Backup {escape(record.target_id)}[/bold {style}]",
                            border_style=style))

    if record.captures:
        captures = create_table("Captures", [
            ("Volume", "cyan", None),
            ("Path", "white", None),
            ("Size", "green", None),
            ("SHA-256", "dim", None),
            ("Status", "white", None),
        ])
        for capture in record.captures:
            status = "[green]ok[/green]" if capture.get("success") else \
                f"[red]{escape(capture.get('error') or 'failed')}[/red]"
            captures.add_row(
                escape(capture["volume"]),
                escape(capture["path"]),
                format_size(capture.get("size")),
                (capture.get("sha256") or "")[:16],
                status,
            )
        console.print(captures)
