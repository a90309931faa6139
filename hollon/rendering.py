"""Console rendering for the CLI: task, worker, approval and conflict tables."""

from typing import Iterable, List

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .models import (
    ApprovalRequest,
    Conflict,
    Task,
    TaskStatus,
    Worker,
    WorkerStatus,
)
from .orchestrator import CycleResult

DIM = "#8B949E"
INFO = "#7FA6D9"
SUCCESS = "#57DB9C"
WARN = "#D9A67F"
ERROR = "#D97F7F"

# Status display: (icon_char, color)
_TASK_DISPLAY = {
    TaskStatus.BACKLOG:            ("○", DIM),
    TaskStatus.READY:              ("○", INFO),
    TaskStatus.BLOCKED:            ("■", WARN),
    TaskStatus.IN_PROGRESS:        ("▸", INFO),
    TaskStatus.READY_FOR_REVIEW:   ("⊙", INFO),
    TaskStatus.IN_REVIEW:          ("⊙", INFO),
    TaskStatus.COMPLETED:          ("✓", SUCCESS),
    TaskStatus.CANCELLED:          ("–", DIM),
    TaskStatus.FAILED:             ("✗", ERROR),
    TaskStatus.WAITING_FOR_WORKER: ("…", WARN),
}

_WORKER_COLORS = {
    WorkerStatus.IDLE: DIM,
    WorkerStatus.WORKING: INFO,
    WorkerStatus.PAUSED: WARN,
    WorkerStatus.ERROR: ERROR,
}


def _status_text(task: Task) -> Text:
    icon, color = _TASK_DISPLAY[task.status]
    return Text(f"{icon} {task.status.value}", style=color)


def render_tasks(console: Console, tasks: Iterable[Task], workers: List[Worker]) -> None:
    names = {w.id: w.name for w in workers}
    table = Table(title="Tasks", title_style="bold", border_style=DIM)
    table.add_column("ID", style=DIM, no_wrap=True)
    table.add_column("Title")
    table.add_column("Priority", justify="center")
    table.add_column("Status")
    table.add_column("Assignee")
    table.add_column("Retries", justify="right")

    for task in sorted(tasks, key=lambda t: (t.depth, t.created_at)):
        indent = "  " * task.depth
        table.add_row(
            task.id, f"{indent}{task.title}", task.priority.value, _status_text(task),
            names.get(task.assigned_worker_id or "", task.assigned_worker_id or "-"),
            str(task.retry_count),
        )
    console.print(table)


def render_workers(console: Console, workers: Iterable[Worker]) -> None:
    table = Table(title="Workers", title_style="bold", border_style=DIM)
    table.add_column("Name")
    table.add_column("Lifecycle")
    table.add_column("Depth", justify="right")
    table.add_column("Status")
    for w in workers:
        table.add_row(w.name, w.lifecycle.value, str(w.depth),
                      Text(w.status.value, style=_WORKER_COLORS[w.status]))
    console.print(table)


def render_approvals(console: Console, approvals: Iterable[ApprovalRequest]) -> None:
    approvals = list(approvals)
    if not approvals:
        return
    table = Table(title="Pending approvals", title_style=f"bold {WARN}", border_style=DIM)
    table.add_column("ID", style=DIM)
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Risk")
    for a in approvals:
        table.add_row(a.id, a.type.value, a.title, Text(a.risk_level, style=ERROR))
    console.print(table)


def render_conflicts(console: Console, conflicts: Iterable[Conflict]) -> None:
    conflicts = list(conflicts)
    if not conflicts:
        console.print(Text("No conflicts detected.", style=SUCCESS))
        return
    table = Table(title="Conflicts", title_style="bold", border_style=DIM)
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Tasks")
    table.add_column("Resolution")
    for c in conflicts:
        table.add_row(
            c.type.value, c.status.value, ", ".join(c.task_ids),
            c.resolution_details or (c.resolution_strategy.value if c.resolution_strategy else "-"),
        )
    console.print(table)


def render_round(console: Console, number: int, results: Iterable[CycleResult],
                 workers: List[Worker]) -> None:
    names = {w.id: w.name for w in workers}
    parts = []
    for r in results:
        color = SUCCESS if r.success else ERROR
        parts.append(f"[{color}]{names.get(r.worker_id, r.worker_id[:8])}: {r.outcome}[/{color}]")
    console.print(f"[{DIM}]round {number}[/{DIM}]  " + "  ".join(parts or ["idle"]))
