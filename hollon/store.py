"""Store: thread-safe in-memory repository for every orchestration record.

Workers, tasks and the rest live in flat id-keyed maps. Components never hold
on to records between steps; they re-query by id, and every write goes through
this module under one re-entrant lock.
"""

import threading
from datetime import date, datetime
from typing import Callable, Dict, List, Optional

from .errors import (
    ApprovalNotFoundError,
    ConflictNotFoundError,
    TaskNotFoundError,
    WorkerNotFoundError,
)
from .models import (
    ApprovalRequest,
    ApprovalStatus,
    Conflict,
    CostRecord,
    Organization,
    ResultDocument,
    Role,
    Task,
    TaskStatus,
    Team,
    Worker,
    WorkerLifecycle,
    now_utc,
)


class Store:
    """In-memory repository with an atomic conditional claim."""

    def __init__(self):
        self._organizations: Dict[str, Organization] = {}
        self._teams: Dict[str, Team] = {}
        self._roles: Dict[str, Role] = {}
        self._workers: Dict[str, Worker] = {}
        self._tasks: Dict[str, Task] = {}
        self._conflicts: Dict[str, Conflict] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._results: Dict[str, ResultDocument] = {}
        self._costs: List[CostRecord] = []
        self._lock = threading.RLock()

    # ── Organizations, teams, roles ───────────────────────────

    def add_organization(self, org: Organization) -> Organization:
        with self._lock:
            self._organizations[org.id] = org
            return org

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._lock:
            return self._organizations.get(org_id)

    def list_organizations(self) -> List[Organization]:
        with self._lock:
            return list(self._organizations.values())

    def add_team(self, team: Team) -> Team:
        with self._lock:
            self._teams[team.id] = team
            return team

    def get_team(self, team_id: Optional[str]) -> Optional[Team]:
        if team_id is None:
            return None
        with self._lock:
            return self._teams.get(team_id)

    def add_role(self, role: Role) -> Role:
        with self._lock:
            self._roles[role.id] = role
            return role

    def get_role(self, role_id: Optional[str]) -> Optional[Role]:
        if role_id is None:
            return None
        with self._lock:
            return self._roles.get(role_id)

    def list_roles(self, organization_id: str,
                   spawnable: Optional[bool] = None) -> List[Role]:
        with self._lock:
            return [
                r for r in self._roles.values()
                if r.organization_id == organization_id
                and (spawnable is None or r.available_for_spawn == spawnable)
            ]

    # ── Workers ───────────────────────────────────────────────

    def add_worker(self, worker: Worker) -> Worker:
        with self._lock:
            self._workers[worker.id] = worker
            return worker

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        with self._lock:
            return self._workers.get(worker_id)

    def remove_worker(self, worker_id: str) -> Optional[Worker]:
        with self._lock:
            return self._workers.pop(worker_id, None)

    def update_worker(self, worker_id: str, **changes) -> Worker:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise WorkerNotFoundError(worker_id)
            _apply(worker, changes)
            return worker

    def list_workers(self, organization_id: Optional[str] = None,
                     lifecycle: Optional[WorkerLifecycle] = None,
                     team_id: Optional[str] = None) -> List[Worker]:
        with self._lock:
            return [
                w for w in self._workers.values()
                if (organization_id is None or w.organization_id == organization_id)
                and (lifecycle is None or w.lifecycle is lifecycle)
                and (team_id is None or w.team_id == team_id)
            ]

    # ── Tasks ─────────────────────────────────────────────────

    def add_task(self, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = task
            return task

    def get_task(self, task_id: Optional[str]) -> Optional[Task]:
        if task_id is None:
            return None
        with self._lock:
            return self._tasks.get(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def update_task(self, task_id: str, **changes) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            _apply(task, changes)
            return task

    def list_tasks(self, organization_id: Optional[str] = None,
                   where: Optional[Callable[[Task], bool]] = None) -> List[Task]:
        with self._lock:
            return [
                t for t in self._tasks.values()
                if (organization_id is None or t.organization_id == organization_id)
                and (where is None or where(t))
            ]

    def children(self, task_id: str) -> List[Task]:
        with self._lock:
            return [t for t in self._tasks.values() if t.parent_task_id == task_id]

    def unresolved_dependencies(self, task: Task) -> List[str]:
        """Ids of dependencies that are not COMPLETED. Unknown ids count as unresolved."""
        with self._lock:
            unresolved = []
            for dep_id in task.dependencies:
                dep = self._tasks.get(dep_id)
                if dep is None or dep.status is not TaskStatus.COMPLETED:
                    unresolved.append(dep_id)
            return unresolved

    def claim_task(self, task_id: str, worker_id: str,
                   expected: TaskStatus,
                   new_status: TaskStatus = TaskStatus.IN_PROGRESS,
                   now: Optional[datetime] = None) -> bool:
        """Conditional claim: one write that succeeds only if the task is still ours to take.

        Matches when the task is in ``expected`` status and is unassigned or
        already assigned to ``worker_id``. Returns False when another worker
        won the race.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status is not expected:
                return False
            if task.assigned_worker_id not in (None, worker_id):
                return False
            task.assigned_worker_id = worker_id
            task.status = new_status
            if new_status is TaskStatus.IN_PROGRESS:
                task.started_at = now or now_utc()
            elif new_status is TaskStatus.IN_REVIEW:
                task.review_count += 1
            return True

    def mark_completed(self, task_id: str, now: Optional[datetime] = None) -> bool:
        """Set COMPLETED once. Returns False if the task was already completed."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status is TaskStatus.COMPLETED:
                return False
            task.status = TaskStatus.COMPLETED
            task.completed_at = now or now_utc()
            task.error_message = None
            return True

    def unblock_waiting(self, completed_task_id: str) -> List[Task]:
        """Promote BLOCKED tasks waiting on ``completed_task_id`` whose waits are all over."""
        with self._lock:
            promoted = []
            for task in self._tasks.values():
                if task.status is not TaskStatus.BLOCKED:
                    continue
                waits = list(task.dependencies) + list(task.blocked_by)
                if completed_task_id not in waits:
                    continue
                if all(
                    (self._tasks.get(w) is not None
                     and self._tasks[w].status is TaskStatus.COMPLETED)
                    for w in waits
                ):
                    task.status = TaskStatus.READY
                    task.blocked_by = []
                    task.error_message = None
                    promoted.append(task)
            return promoted

    # ── Results and costs ─────────────────────────────────────

    def save_result(self, doc: ResultDocument) -> None:
        with self._lock:
            self._results[doc.task_id] = doc

    def get_result(self, task_id: str) -> Optional[ResultDocument]:
        with self._lock:
            return self._results.get(task_id)

    def record_cost(self, record: CostRecord) -> None:
        with self._lock:
            self._costs.append(record)

    def daily_cost(self, organization_id: str, day: Optional[date] = None) -> float:
        day = day or now_utc().date()
        with self._lock:
            return sum(
                c.cost for c in self._costs
                if c.organization_id == organization_id and c.timestamp.date() == day
            )

    def cost_records(self, organization_id: Optional[str] = None) -> List[CostRecord]:
        with self._lock:
            return [
                c for c in self._costs
                if organization_id is None or c.organization_id == organization_id
            ]

    # ── Conflicts and approvals ───────────────────────────────

    def add_conflict(self, conflict: Conflict) -> Conflict:
        with self._lock:
            self._conflicts[conflict.id] = conflict
            return conflict

    def get_conflict(self, conflict_id: str) -> Conflict:
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                raise ConflictNotFoundError(conflict_id)
            return conflict

    def update_conflict(self, conflict_id: str, **changes) -> Conflict:
        with self._lock:
            conflict = self.get_conflict(conflict_id)
            _apply(conflict, changes)
            return conflict

    def list_conflicts(self, organization_id: Optional[str] = None) -> List[Conflict]:
        with self._lock:
            return [
                c for c in self._conflicts.values()
                if organization_id is None or c.organization_id == organization_id
            ]

    def add_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        with self._lock:
            self._approvals[approval.id] = approval
            return approval

    def get_approval(self, approval_id: str) -> ApprovalRequest:
        with self._lock:
            approval = self._approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(approval_id)
            return approval

    def update_approval(self, approval_id: str, **changes) -> ApprovalRequest:
        with self._lock:
            approval = self.get_approval(approval_id)
            _apply(approval, changes)
            return approval

    def list_approvals(self, organization_id: Optional[str] = None,
                       status: Optional[ApprovalStatus] = None) -> List[ApprovalRequest]:
        with self._lock:
            return [
                a for a in self._approvals.values()
                if (organization_id is None or a.organization_id == organization_id)
                and (status is None or a.status is status)
            ]


def _apply(record, changes: Dict) -> None:
    for key, value in changes.items():
        if not hasattr(record, key):
            raise AttributeError(f"{type(record).__name__} has no field '{key}'")
        setattr(record, key, value)
