"""Escalation chain: five levels of remedy, from self-retry up to a human.

Levels are walked in order starting at ``start_level`` and the walk stops at
the first level that handles the problem. No level waits for an answer;
helpers, leaders and humans respond asynchronously through task and message
state that later cycles pick up.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional

from .approvals import ApprovalService
from .errors import WorkerNotFoundError
from .logger import get_logger
from .messages import MessageType, Notifier, notify
from .models import (
    ApprovalType,
    Task,
    TaskStatus,
    Worker,
    WorkerLifecycle,
    WorkerStatus,
    now_utc,
)
from .store import Store

_log = get_logger(__name__)


class EscalationLevel(IntEnum):
    SELF_RESOLVE = 1
    TEAM_COLLABORATION = 2
    TEAM_LEADER = 3
    UPPER_TEAM = 4
    HUMAN = 5


@dataclass
class EscalationResult:
    handled: bool
    level: EscalationLevel
    action: str
    message: str = ""
    helper_worker_id: Optional[str] = None
    pending_approval_id: Optional[str] = None
    attempts: List[EscalationLevel] = field(default_factory=list)


@dataclass
class EscalationEvent:
    task_id: str
    worker_id: str
    level: EscalationLevel
    handled: bool
    reason: str
    timestamp: float = field(default_factory=lambda: now_utc().timestamp())


HelperSelector = Callable[[List[Worker], Optional[Task]], Worker]
EscalationListener = Callable[[EscalationEvent], None]


def first_candidate(candidates: List[Worker], task: Optional[Task]) -> Worker:
    return candidates[0]


# Events kept per task for the audit trail
_MAX_HISTORY = 50


class EscalationChain:
    def __init__(self, store: Store, approvals: ApprovalService,
                 notifier: Optional[Notifier] = None, max_retries: int = 3,
                 helper_selector: HelperSelector = first_candidate):
        self.store = store
        self.approvals = approvals
        self.notifier = notifier
        self.max_retries = max_retries
        self.helper_selector = helper_selector
        self._listeners: List[EscalationListener] = []
        self._history: Dict[str, deque] = defaultdict(lambda: deque(maxlen=_MAX_HISTORY))
        self._lock = threading.Lock()

    def add_listener(self, listener: EscalationListener) -> None:
        self._listeners.append(listener)

    def history(self, task_id: str) -> List[EscalationEvent]:
        with self._lock:
            return list(self._history.get(task_id, ()))

    def escalate(self, worker_id: str, task_id: str, reason: str,
                 start_level: EscalationLevel = EscalationLevel.SELF_RESOLVE) -> EscalationResult:
        worker = self.store.get_worker(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        task = self.store.get_task(task_id)

        handlers = {
            EscalationLevel.SELF_RESOLVE: self._self_resolve,
            EscalationLevel.TEAM_COLLABORATION: self._team_collaboration,
            EscalationLevel.TEAM_LEADER: self._team_leader,
            EscalationLevel.UPPER_TEAM: self._upper_team,
            EscalationLevel.HUMAN: self._human,
        }
        attempts: List[EscalationLevel] = []
        for level in EscalationLevel:
            if level < start_level:
                continue
            attempts.append(level)
            result = handlers[level](worker, task, reason)
            self._emit(EscalationEvent(
                task_id=task_id, worker_id=worker_id, level=level,
                handled=result is not None, reason=reason,
            ))
            if result is not None:
                result.attempts = attempts
                _log.info("Escalation for task %s handled at %s: %s",
                          task_id, level.name, result.action)
                return result
        # HUMAN always handles; unreachable unless start_level is out of range.
        raise ValueError(f"Invalid start level: {start_level}")

    def _emit(self, event: EscalationEvent) -> None:
        with self._lock:
            self._history[event.task_id].append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                _log.warning("Escalation listener failed: %s", e)

    # ── Levels ────────────────────────────────────────────────

    def _self_resolve(self, worker: Worker, task: Optional[Task],
                      reason: str) -> Optional[EscalationResult]:
        if task is None or task.retry_count >= self.max_retries:
            return None
        self.store.update_task(
            task.id, status=TaskStatus.READY, retry_count=task.retry_count + 1,
            feedback=reason,
        )
        return EscalationResult(
            handled=True, level=EscalationLevel.SELF_RESOLVE, action="retry",
            message=f"Retry {task.retry_count}/{self.max_retries}",
        )

    def _team_collaboration(self, worker: Worker, task: Optional[Task],
                            reason: str) -> Optional[EscalationResult]:
        if worker.team_id is None:
            return None
        candidates = [
            w for w in self.store.list_workers(
                worker.organization_id, team_id=worker.team_id, lifecycle=WorkerLifecycle.PERMANENT,
            )
            if w.id != worker.id and w.status is WorkerStatus.IDLE
        ]
        if not candidates:
            return None
        helper = self.helper_selector(candidates, task)
        notify(self.notifier, worker.id, helper.id, MessageType.COLLABORATION_REQUEST,
               f"{worker.name} needs help with '{_title(task)}': {reason}",
               {"task_id": _task_id(task)})
        return EscalationResult(
            handled=True, level=EscalationLevel.TEAM_COLLABORATION,
            action="collaboration_requested", helper_worker_id=helper.id,
            message=f"Asked {helper.name} for help",
        )

    def _team_leader(self, worker: Worker, task: Optional[Task],
                     reason: str) -> Optional[EscalationResult]:
        team = self.store.get_team(worker.team_id)
        if team is None or not team.leader_worker_id or team.leader_worker_id == worker.id:
            return None
        notify(self.notifier, worker.id, team.leader_worker_id, MessageType.DECISION_REQUEST,
               f"Decision needed on '{_title(task)}': {reason}",
               {"task_id": _task_id(task), "team_id": team.id})
        return EscalationResult(
            handled=True, level=EscalationLevel.TEAM_LEADER,
            action="leader_notified", message=f"Escalated to leader of {team.name}",
        )

    def _upper_team(self, worker: Worker, task: Optional[Task],
                    reason: str) -> Optional[EscalationResult]:
        team = self.store.get_team(worker.team_id)
        parent = self.store.get_team(team.parent_team_id) if team else None
        if parent is None or not parent.leader_worker_id:
            return None
        notify(self.notifier, worker.id, parent.leader_worker_id, MessageType.ESCALATION,
               f"Escalated from {team.name} on '{_title(task)}': {reason}",
               {"task_id": _task_id(task), "team_id": team.id})
        return EscalationResult(
            handled=True, level=EscalationLevel.UPPER_TEAM,
            action="upper_team_notified", message=f"Escalated to {parent.name}",
        )

    def _human(self, worker: Worker, task: Optional[Task],
               reason: str) -> Optional[EscalationResult]:
        approval = self.approvals.create(
            ApprovalType.ESCALATION, worker.organization_id,
            title=f"Human help needed: {_title(task)}",
            description=reason, reasoning=(
                f"Automatic remedies were exhausted for worker {worker.name}."
            ),
            task_id=_task_id(task), worker_id=worker.id,
            escalation_level=int(EscalationLevel.HUMAN),
        )
        return EscalationResult(
            handled=True, level=EscalationLevel.HUMAN, action="approval_requested",
            pending_approval_id=approval.id, message="Waiting for human approval",
        )


def _title(task: Optional[Task]) -> str:
    return task.title if task else "unknown task"


def _task_id(task: Optional[Task]) -> Optional[str]:
    return task.id if task else None
