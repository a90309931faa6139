"""Conflict detection and resolution for concurrently active tasks.

Four independent checks each yield at most one conflict per scope. FILE and
RESOURCE conflicts are resolved on the spot by letting one task proceed and
blocking the rest; PRIORITY and DEADLINE conflicts always go to a human.
Conflict records are never deleted.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from .approvals import ApprovalService
from .logger import get_logger
from .messages import MessageType, Notifier, notify
from .models import (
    ApprovalType,
    Conflict,
    ConflictStatus,
    ConflictType,
    ResolutionStrategy,
    Task,
    TaskPriority,
    TaskStatus,
    now_utc,
)
from .store import Store

_log = get_logger(__name__)

_URGENT = frozenset({TaskPriority.P1_CRITICAL, TaskPriority.P2_HIGH})


@dataclass
class ConflictContext:
    organization_id: str
    files: Optional[List[str]] = None
    resource_tags: Optional[List[str]] = None
    task_ids: Optional[List[str]] = None


@dataclass
class DetectionResult:
    conflicts: List[Conflict] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class ConflictResolver:
    def __init__(self, store: Store, approvals: ApprovalService,
                 notifier: Optional[Notifier] = None, deadline_window_hours: int = 24):
        self.store = store
        self.approvals = approvals
        self.notifier = notifier
        self.deadline_window = timedelta(hours=deadline_window_hours)

    def detect_and_resolve(self, context: ConflictContext) -> DetectionResult:
        result = DetectionResult()
        if context.files:
            result.conflicts.extend(self._check_files(context))
        if context.resource_tags:
            result.conflicts.extend(self._check_resources(context))
        if context.task_ids:
            tasks = self._context_tasks(context)
            result.conflicts.extend(self._check_priority(context, tasks))
            result.conflicts.extend(self._check_deadlines(context, tasks))

        for conflict in result.conflicts:
            self.store.add_conflict(conflict)
            _log.warning("Detected %s conflict %s: %s",
                         conflict.type.value, conflict.id, conflict.description)
            self._resolve(conflict)
        return result

    def manually_resolve(self, conflict_id: str, notes: str) -> Conflict:
        self.store.get_conflict(conflict_id)
        _log.info("Conflict %s resolved manually", conflict_id)
        return self.store.update_conflict(
            conflict_id, status=ConflictStatus.RESOLVED,
            resolution_details=notes, resolved_at=now_utc(),
        )

    # ── Detection ─────────────────────────────────────────────

    def _check_files(self, context: ConflictContext) -> List[Conflict]:
        files = set(context.files)
        active = (TaskStatus.IN_PROGRESS, TaskStatus.READY)
        matching = self.store.list_tasks(
            context.organization_id,
            where=lambda t: t.status in active and bool(files.intersection(t.affected_files)),
        )
        if len(matching) < 2:
            return []
        touched = set().union(*(t.affected_files for t in matching))
        shared = sorted(files & touched)
        return [self._record(
            ConflictType.FILE, context, matching,
            f"{len(matching)} active tasks touch {', '.join(shared)}",
            {"files": shared},
        )]

    def _check_resources(self, context: ConflictContext) -> List[Conflict]:
        tags = set(context.resource_tags)
        matching = self.store.list_tasks(
            context.organization_id,
            where=lambda t: t.status is TaskStatus.IN_PROGRESS and bool(tags.intersection(t.tags)),
        )
        if len(matching) < 2:
            return []
        return [self._record(
            ConflictType.RESOURCE, context, matching,
            f"{len(matching)} in-progress tasks compete for {', '.join(sorted(tags))}",
            {"resource_tags": sorted(tags)},
        )]

    def _check_priority(self, context: ConflictContext, tasks: List[Task]) -> List[Conflict]:
        conflicts = []
        for worker_id, group in _by_worker(tasks).items():
            urgent = [t for t in group if t.priority in _URGENT]
            if len(urgent) > 1:
                conflicts.append(self._record(
                    ConflictType.PRIORITY, context, urgent,
                    f"Worker {worker_id} holds {len(urgent)} high-priority tasks",
                    {"worker_id": worker_id},
                ))
        return conflicts

    def _check_deadlines(self, context: ConflictContext, tasks: List[Task]) -> List[Conflict]:
        horizon = now_utc() + self.deadline_window
        conflicts = []
        for worker_id, group in _by_worker(tasks).items():
            due_soon = [t for t in group if t.due_date is not None and t.due_date <= horizon]
            if len(due_soon) > 1:
                conflicts.append(self._record(
                    ConflictType.DEADLINE, context, due_soon,
                    f"Worker {worker_id} has {len(due_soon)} tasks due within "
                    f"{int(self.deadline_window.total_seconds() // 3600)}h",
                    {"worker_id": worker_id},
                ))
        return conflicts

    def _context_tasks(self, context: ConflictContext) -> List[Task]:
        tasks = []
        for task_id in context.task_ids:
            task = self.store.get_task(task_id)
            if task is not None and not task.is_terminal:
                tasks.append(task)
        return tasks

    @staticmethod
    def _record(type: ConflictType, context: ConflictContext, tasks: List[Task],
                description: str, details: Dict) -> Conflict:
        worker_ids = sorted({t.assigned_worker_id for t in tasks if t.assigned_worker_id})
        return Conflict(
            type=type, organization_id=context.organization_id,
            description=description, task_ids=[t.id for t in tasks],
            worker_ids=worker_ids, context=details,
        )

    # ── Resolution ────────────────────────────────────────────

    def _resolve(self, conflict: Conflict) -> None:
        if conflict.type is ConflictType.FILE:
            self._let_one_proceed(
                conflict, ResolutionStrategy.SEQUENTIAL_EXECUTION,
                key=lambda t: t.created_at,
            )
        elif conflict.type is ConflictType.RESOURCE:
            self._let_one_proceed(
                conflict, ResolutionStrategy.PRIORITY_PREEMPTION,
                key=lambda t: (t.priority.rank, t.created_at),
            )
        else:
            self._escalate_to_human(conflict)

    def _let_one_proceed(self, conflict: Conflict, strategy: ResolutionStrategy, key) -> None:
        self.store.update_conflict(conflict.id, status=ConflictStatus.RESOLVING)
        tasks = sorted(self._tasks(conflict.task_ids), key=key)
        winner, losers = tasks[0], tasks[1:]
        for task in losers:
            message = f"Waiting on task '{winner.title}' ({winner.id}): {conflict.description}"
            self.store.update_task(
                task.id, status=TaskStatus.BLOCKED,
                blocked_by=sorted(set(task.blocked_by) | {winner.id}),
                error_message=message,
            )
            if task.assigned_worker_id:
                notify(self.notifier, "system", task.assigned_worker_id,
                       MessageType.CONFLICT_NOTICE, message,
                       {"conflict_id": conflict.id, "task_id": task.id,
                        "waiting_on": winner.id})
        self.store.update_conflict(
            conflict.id, status=ConflictStatus.RESOLVED, resolution_strategy=strategy,
            resolution_details=f"Task {winner.id} proceeds; blocked {', '.join(t.id for t in losers)}",
            resolved_at=now_utc(),
        )

    def _escalate_to_human(self, conflict: Conflict) -> None:
        approval = self.approvals.create(
            ApprovalType.CONFLICT, conflict.organization_id,
            title=f"{conflict.type.value.title()} conflict needs a decision",
            description=conflict.description,
            reasoning="Business priority calls cannot be made automatically.",
        )
        self.store.update_conflict(
            conflict.id, status=ConflictStatus.ESCALATED,
            resolution_strategy=ResolutionStrategy.MANUAL_INTERVENTION,
            resolution_details=f"Awaiting human decision (approval {approval.id})",
            escalated_at=now_utc(),
        )

    def _tasks(self, task_ids: Iterable[str]) -> List[Task]:
        return [t for t in (self.store.get_task(i) for i in task_ids) if t is not None]


def _by_worker(tasks: List[Task]) -> Dict[str, List[Task]]:
    groups: Dict[str, List[Task]] = defaultdict(list)
    for task in tasks:
        if task.assigned_worker_id:
            groups[task.assigned_worker_id].append(task)
    return groups
