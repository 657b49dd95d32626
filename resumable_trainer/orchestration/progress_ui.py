from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)


@dataclass
class Ui:
    """Console plus one epoch bar per training run."""

    console: Console
    progress: Progress
    _task: TaskID | None = field(default=None, repr=False)

    def log(self, message: str) -> None:
        self.console.print(message)

    def show_epoch(self, epoch: int, total: int, metrics: str = "") -> None:
        # total 0 means open-ended (early stopping decides), shown as a spinner
        bar_total = total or None
        if self._task is None:
            self._task = self.progress.add_task("Training", total=bar_total, metrics=metrics)
        self.progress.update(self._task, completed=epoch, total=bar_total, metrics=metrics)

    def end_run(self, summary: str | None = None) -> None:
        if self._task is not None:
            self.progress.remove_task(self._task)
            self._task = None
        if summary:
            self.log(summary)


def make_progress(console: Console) -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("{task.fields[metrics]}"),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=True,
    )


@contextmanager
def progress_ui(console: Console | None = None) -> Iterator[Ui]:
    console = console or Console(stderr=True)
    progress = make_progress(console)
    with progress:
        yield Ui(console=console, progress=progress)
