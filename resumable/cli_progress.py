"""Console rendering and progress helpers for the resumable CLI."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from .models import FailureRecord, SuccessRecord

console = Console()


def _human_size(value: int) -> str:
    size = float(max(value, 0))
    units = ["B", "KB", "MB", "GB", "TB"]
    unit_idx = 0
    while size >= 1024.0 and unit_idx < len(units) - 1:
        size /= 1024.0
        unit_idx += 1
    if unit_idx == 0:
        return f"{int(size)} {units[unit_idx]}"
    return f"{size:.2f} {units[unit_idx]}"


def render_configuration_summary(config: Dict[str, Any], out: Optional[Console] = None) -> None:
    """Render startup configuration summary."""
    out = out or console
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column(style="white")

    for key, value in config.items():
        rendered = "-" if value is None else str(value)
        table.add_row(key, rendered)

    out.print(
        Panel(
            table,
            title="[bold green]resumable[/bold green]",
            subtitle="[dim]upload CLI[/dim]",
            border_style="blue",
        )
    )


class UploadProgressDisplay:
    """One progress bar per queued file, fed by scheduler events."""

    def __init__(self, out: Optional[Console] = None):
        self._console = out or console
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[filename]}", justify="left"),
            BarColumn(bar_width=36),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=self._console,
            expand=False,
        )
        self._tasks: Dict[str, TaskID] = {}
        self._sizes: Dict[str, int] = {}
        self.succeeded: List[SuccessRecord] = []
        self.failed: List[FailureRecord] = []

    def __enter__(self):
        self._progress.start()
        return self

    def __exit__(self, *args):
        self._progress.stop()

    def add_file(self, task_id: str, filename: str, size: int) -> None:
        self._sizes[task_id] = size
        self._tasks[task_id] = self._progress.add_task(
            "upload", filename=escape(filename[:48]), total=max(size, 1)
        )

    def on_progress(self, task_id: str, fraction: float) -> None:
        progress_task = self._tasks.get(task_id)
        if progress_task is None:
            return
        total = max(self._sizes.get(task_id, 0), 1)
        self._progress.update(progress_task, completed=int(total * fraction))

    def on_success(self, record: SuccessRecord) -> None:
        self.succeeded.append(record)
        progress_task = self._tasks.get(record.task_id)
        if progress_task is not None:
            self._progress.update(progress_task, completed=max(record.file_size, 1))
        self._console.print(f"[green]✓[/green] {escape(record.file_name)} ({_human_size(record.file_size)})")

    def on_failure(self, failure: FailureRecord) -> None:
        self.failed.append(failure)
        progress_task = self._tasks.get(failure.task_id)
        if progress_task is not None:
            self._progress.update(progress_task, visible=False)
        self._console.print(f"[red]✗[/red] {escape(failure.file_name)}: {escape(failure.error_detail)}")

    def render_summary(self) -> None:
        total = len(self.succeeded) + len(self.failed)
        style = "green" if not self.failed else "yellow"
        self._console.print(
            f"[{style}]Uploaded {len(self.succeeded)}/{total} file(s)[/{style}]"
            + (f", [red]{len(self.failed)} failed[/red]" if self.failed else "")
        )
