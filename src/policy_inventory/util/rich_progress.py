from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from ..normalize.schema import ReportDocument
from ..pipeline.events import OUTCOME_COMPLETE, OUTCOME_FAILED, OUTCOME_START, PipelineEvent

# Stages that get a progress row, with their labels.
STAGE_LABELS = {
    "fetch": "Fetch",
    "detail": "Details",
    "normalization": "Normalize",
    "merge": "Merge",
}


def _format_counts(counts: Dict[str, int], *, max_items: int = 4) -> str:
    if not counts:
        return ""
    items = sorted(counts.items(), key=lambda item: item[0])
    shown = items[:max_items]
    tail = len(items) - len(shown)
    rendered = ", ".join([f"{name}={count}" for name, count in shown])
    if tail > 0:
        rendered = f"{rendered} (+{tail} more)"
    return rendered


class RichProgressObserver:
    """
    Pipeline observer rendering one transient progress row per stage.
    Failure counts per stage are shown next to the bar.
    """

    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._enabled = bool(enabled)
        self._console = console or Console(stderr=True)
        self._lock = threading.Lock()
        self._tasks: Dict[str, TaskID] = {}
        self._failures: Dict[str, int] = {}
        self._started = False
        self._progress: Optional[Progress] = None
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TextColumn("{task.fields[failures]}", justify="left"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> RichProgressObserver:
        if self._progress is not None and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._progress is not None and self._started:
            self._progress.stop()
            self._started = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _task_for(self, stage: str, total: Optional[int]) -> Optional[TaskID]:
        if self._progress is None or stage not in STAGE_LABELS:
            return None
        task = self._tasks.get(stage)
        if task is None:
            task = self._progress.add_task(STAGE_LABELS[stage], total=total, failures="")
            self._tasks[stage] = task
        elif total is not None:
            self._progress.update(task, total=total)
        return task

    def on_event(self, event: PipelineEvent) -> None:
        if self._progress is None:
            return
        with self._lock:
            if event.outcome == OUTCOME_START:
                total = event.count if event.stage in ("detail", "normalization") else None
                self._task_for(event.stage, total)
                return
            task = self._task_for(event.stage, None)
            if task is None:
                return
            if event.outcome == OUTCOME_COMPLETE:
                if event.stage == "fetch":
                    self._progress.update(task, advance=event.count or 0)
                else:
                    self._progress.update(task, completed=event.count or 0, total=event.count or 0)
                return
            if event.outcome == OUTCOME_FAILED:
                self._failures[event.stage] = self._failures.get(event.stage, 0) + 1
                self._progress.update(task, failures=f"failed={self._failures[event.stage]}")
            if event.stage != "fetch":
                self._progress.update(task, advance=1)


def render_run_summary_table(
    *,
    enabled: bool,
    status: str,
    document: Optional[ReportDocument],
    outdir: str,
    console: Optional[Console] = None,
) -> None:
    if not enabled:
        return
    table = Table(title="Run Summary", show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Status", status)
    if document is not None:
        summary = document.summary()
        table.add_row("Scope", document.metadata.source_scope)
        if document.metadata.filter_description:
            table.add_row("Filter", document.metadata.filter_description)
        table.add_row("Entities", str(summary["total_entities"]))
        table.add_row("Assignments", str(summary["total_assignments"]))
        table.add_row("By type", _format_counts(summary["counts_by_entity_type"]))
        table.add_row("Errors", str(summary["errors"]))
        if summary["errors_by_stage"]:
            table.add_row("Errors by stage", _format_counts(summary["errors_by_stage"]))
    table.add_row("Output dir", outdir)
    (console or Console()).print(table)
