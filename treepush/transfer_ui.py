from __future__ import annotations

import threading
from dataclasses import dataclass

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from treepush.models import PushPhase


PHASE_LABELS = {
    PushPhase.IDLE: "queued",
    PushPhase.VALIDATING: "validating",
    PushPhase.DIFFING: "diffing",
    PushPhase.UPLOADING_BLOBS: "uploading blobs",
    PushPhase.BUILDING_TREE: "building tree",
    PushPhase.COMMITTING: "committing",
    PushPhase.UPDATING_REF: "updating ref",
    PushPhase.COMPLETED: "done",
    PushPhase.FAILED: "failed",
}


@dataclass(slots=True)
class PushTaskHandle:
    task_id: TaskID
    label: str


class PushProgressUI:
    """One progress row per push, fed by the ``(phase, percent)`` callback."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console
        self._lock = threading.Lock()
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.fields[label]}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[state]}"),
            console=console,
            transient=False,
            expand=True,
        )

    def __enter__(self) -> "PushProgressUI":
        self._progress.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.__exit__(exc_type, exc, tb)

    def add_push(self, label: str) -> PushTaskHandle:
        with self._lock:
            task_id = self._progress.add_task(
                description=label,
                total=100,
                completed=0,
                label=label,
                state=PHASE_LABELS[PushPhase.IDLE],
            )
        return PushTaskHandle(task_id=task_id, label=label)

    def update(self, handle: PushTaskHandle, phase: PushPhase, percent: int) -> None:
        with self._lock:
            state = PHASE_LABELS[phase]
            if phase is PushPhase.FAILED:
                state = f"[red]{state}[/red]"
            elif phase is PushPhase.COMPLETED:
                state = f"[green]{state}[/green]"
            self._progress.update(handle.task_id, completed=percent, state=state)

    def callback(self, handle: PushTaskHandle):
        def _on_progress(phase: PushPhase, percent: int) -> None:
            self.update(handle, phase, percent)

        return _on_progress
