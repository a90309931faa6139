"""TaskPool: selects and atomically claims the next task for a worker."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .errors import WorkerNotFoundError
from .logger import get_logger
from .models import Task, TaskStatus, Worker, now_utc
from .store import Store
from .workers import WorkerRegistry

_log = get_logger(__name__)

NO_TASK = "no task available"

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


@dataclass
class PullResult:
    task: Optional[Task]
    reason: str


def _queue_order(task: Task) -> Tuple:
    """Priority desc, due date asc (nulls last), created asc."""
    return (
        task.priority.rank,
        task.due_date is None,
        task.due_date or _FAR_FUTURE,
        task.created_at,
    )


class TaskPool:
    """Pull-based task selection. The store's conditional claim is the only
    guard against two workers taking the same task."""

    def __init__(self, store: Store, registry: Optional[WorkerRegistry] = None,
                 max_review_count: int = 3):
        self.store = store
        self.registry = registry
        self.max_review_count = max_review_count

    # ── Selection ─────────────────────────────────────────────

    def pull_next(self, worker_id: str) -> PullResult:
        worker = self.store.get_worker(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)

        for attempt in range(2):
            selection = self._select(worker)
            if selection is None:
                return PullResult(None, NO_TASK)
            task, expected, new_status, reason = selection
            if self.store.claim_task(task.id, worker.id, expected, new_status, now=now_utc()):
                return PullResult(self.store.get_task(task.id), reason)
            _log.info("Worker %s lost the claim on task %s (attempt %d)",
                      worker.name, task.id, attempt + 1)
        return PullResult(None, NO_TASK)

    def _select(self, worker: Worker):
        review = self._first(self._reviewable(worker))
        if review is not None:
            return review, TaskStatus.IN_REVIEW, TaskStatus.IN_REVIEW, "review pending"

        resumable = (TaskStatus.READY, TaskStatus.IN_PROGRESS)
        if self.registry is not None and self.registry.has_capacity(worker.organization_id):
            resumable += (TaskStatus.WAITING_FOR_WORKER,)
        own = self._first(self._candidates(
            worker.organization_id,
            lambda t: (t.assigned_worker_id == worker.id and t.status in resumable
                       and not self._delegated(t)),
        ))
        if own is not None:
            return own, own.status, TaskStatus.IN_PROGRESS, "resumed assigned task"

        # Temporary workers only ever work on what they were spawned for.
        if worker.is_temporary:
            return None

        if worker.team_id is not None:
            team_task = self._first(self._candidates(
                worker.organization_id,
                lambda t: (t.assigned_worker_id is None and t.status is TaskStatus.READY
                           and t.team_id == worker.team_id),
            ))
            if team_task is not None:
                return team_task, TaskStatus.READY, TaskStatus.IN_PROGRESS, "team backlog"

        capabilities = self._capabilities(worker)
        if capabilities:
            matched = self._first(self._candidates(
                worker.organization_id,
                lambda t: (t.assigned_worker_id is None and t.status is TaskStatus.READY
                           and bool(capabilities.intersection(t.tags))),
            ))
            if matched is not None:
                return matched, TaskStatus.READY, TaskStatus.IN_PROGRESS, "capability match"
        return None

    def _reviewable(self, worker: Worker) -> List[Task]:
        def _match(t: Task) -> bool:
            if t.status is not TaskStatus.IN_REVIEW:
                return False
            if t.assigned_worker_id not in (None, worker.id):
                return False
            if worker.id not in (t.assigned_worker_id, t.reviewer_worker_id):
                return False
            if t.review_count >= self.max_review_count:
                return False
            return t.is_composite or bool(self.store.children(t.id))
        return sorted(self.store.list_tasks(worker.organization_id, where=_match), key=_queue_order)

    def _delegated(self, task: Task) -> bool:
        """An IN_PROGRESS parent whose subtasks are still live waits for them, not a worker."""
        if task.status is not TaskStatus.IN_PROGRESS:
            return False
        return any(c.status is not TaskStatus.CANCELLED for c in self.store.children(task.id))

    def _candidates(self, organization_id: str, where: Callable[[Task], bool]) -> List[Task]:
        tasks = self.store.list_tasks(organization_id, where=where)
        ready = [t for t in tasks if not self.store.unresolved_dependencies(t)]
        return sorted(ready, key=_queue_order)

    def _capabilities(self, worker: Worker) -> set:
        role = self.store.get_role(worker.role_id)
        return set(role.capabilities) if role else set()

    @staticmethod
    def _first(tasks: List[Task]) -> Optional[Task]:
        return tasks[0] if tasks else None

    # ── Transitions ───────────────────────────────────────────

    def complete_task(self, task_id: str) -> bool:
        """Mark COMPLETED and release waiting tasks. A repeat call is a no-op."""
        if not self.store.mark_completed(task_id, now=now_utc()):
            return False
        for task in self.store.unblock_waiting(task_id):
            _log.info("Task %s unblocked by completion of %s", task.id, task_id)
        return True

    def fail_task(self, task_id: str, reason: str) -> Task:
        _log.warning("Task %s failed: %s", task_id, reason)
        return self.store.update_task(task_id, status=TaskStatus.FAILED, error_message=reason)

    def release_task(self, task_id: str, reason: str = "") -> Task:
        """Unassign a task and put it back on the READY queue."""
        return self.store.update_task(
            task_id, status=TaskStatus.READY, assigned_worker_id=None,
            error_message=reason or None,
        )
