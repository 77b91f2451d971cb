"""
Manages a Rich progress display for concurrent engine downloads.
"""

from rich.console import Console
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

from engine_cache.models.progress import ProgressCallback


class ProgressManager:
    """One progress bar per engine version being downloaded."""

    def __init__(self, console: Console):
        self.console = console
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=console,
            transient=False,
        )
        self._tasks: dict[str, TaskID] = {}

    def callback_for(self, version: str) -> ProgressCallback:
        """Creates a progress callback that drives the bar for ``version``."""
        task_id = self.progress.add_task(f"Engine [cyan]{version}[/cyan]", total=None)
        self._tasks[version] = task_id

        def on_progress(bytes_so_far: int, total_bytes: int | None) -> None:
            self.progress.update(task_id, completed=bytes_so_far, total=total_bytes)

        return on_progress

    def finish(self, version: str, outcome: str) -> None:
        """Marks a version's bar as finished with 'installed', 'failed' or 'cancelled'."""
        task_id = self._tasks.pop(version, None)
        if task_id is None:
            return
        styles = {
            "installed": "[green]✓[/green]",
            "failed": "[red]✗[/red]",
            "cancelled": "[yellow]○[/yellow]",
        }
        task = next(t for t in self.progress.tasks if t.id == task_id)
        if outcome == "installed" and task.total is None:
            # Already installed, so no bytes were ever reported.
            done = task.completed or 1
            self.progress.update(task_id, total=done, completed=done)
        self.progress.update(
            task_id,
            description=f"{styles.get(outcome, '')} Engine [cyan]{version}[/cyan]",
        )
        self.progress.stop_task(task_id)

    async def __aenter__(self):
        self.progress.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.progress.stop()
