"""Execution orchestrator: one worker cycle of pull → decompose or execute → validate.

Every collaborator is built here from a store, a Brain and optional ports, so
a deployment only wires the orchestrator and calls ``run_cycle`` per worker.
"""

import time
from dataclasses import dataclass
from typing import Optional

from .approvals import ApprovalService
from .brain import Brain, MeteredBrain
from .codehost import CodeHost
from .config import OrchestrationConfig
from .conflicts import ConflictContext, ConflictResolver
from .decomposition import Decomposer, DecompositionOutcome
from .errors import BrainExecutionError, WorkerNotFoundError
from .escalation import EscalationChain, EscalationLevel, HelperSelector, first_candidate
from .logger import for_worker, get_logger
from .messages import Notifier
from .models import (
    CODE_TYPES,
    ResultDocument,
    Task,
    TaskStatus,
    Worker,
    WorkerStatus,
)
from .pool import TaskPool
from .prompts import build_system_prompt, execution_prompt
from .quality import QualityGate, task_category
from .review import ReviewCycle
from .store import Store
from .workers import WorkerRegistry

_log = get_logger(__name__)


@dataclass
class CycleResult:
    worker_id: str
    outcome: str
    task_id: Optional[str] = None
    success: bool = True
    message: str = ""
    duration: float = 0.0


def is_complex(task: Task) -> bool:
    """Any one signal marks a task as too big for a single worker."""
    return (
        task.is_composite
        or task.estimated_complexity == "high"
        or len(task.dependencies) > 3
        or len(task.required_skills) > 2
        or (task.story_points or 0) > 8
    )


class Orchestrator:
    def __init__(self, store: Store, brain: Brain,
                 settings: Optional[OrchestrationConfig] = None,
                 codehost: Optional[CodeHost] = None,
                 notifier: Optional[Notifier] = None,
                 helper_selector: HelperSelector = first_candidate):
        self.store = store
        self.settings = settings or OrchestrationConfig()
        self.codehost = codehost
        self.notifier = notifier

        s = self.settings
        self.registry = WorkerRegistry(store, s.max_temporary_workers)
        self.pool = TaskPool(store, self.registry, s.max_review_count)
        self.approvals = ApprovalService(store, notifier)
        self.escalation = EscalationChain(
            store, self.approvals, notifier, s.max_retries, helper_selector,
        )
        self.quality = QualityGate(store)
        self.conflicts = ConflictResolver(store, self.approvals, notifier, s.deadline_window_hours)
        self.brain = MeteredBrain(brain, store, s.brain_timeout)
        self.decomposer = Decomposer(store, self.registry, self.brain, s.max_subtasks_per_parent)
        self.review = ReviewCycle(
            store, self.pool, self.registry, self.brain, self.decomposer,
            self.escalation, codehost, notifier, s.review_capability, s.max_review_count,
        )

    # ── Cycle ─────────────────────────────────────────────────

    def run_cycle(self, worker_id: str) -> CycleResult:
        t0 = time.perf_counter()
        result = self._cycle(worker_id)
        result.duration = time.perf_counter() - t0
        return result

    def _cycle(self, worker_id: str) -> CycleResult:
        worker = self.registry.find_by_id(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        if worker.status is WorkerStatus.PAUSED:
            return CycleResult(worker_id, "paused")
        self.registry.update_status(worker_id, WorkerStatus.WORKING)

        task: Optional[Task] = None
        try:
            if worker.is_temporary and self.review.perform_code_reviews(worker):
                self._set_idle(worker)
                return CycleResult(worker_id, "code_reviewed")

            pulled = self.pool.pull_next(worker_id)
            task = pulled.task
            if task is None:
                self._set_idle(worker)
                return CycleResult(worker_id, "no_task", message=pulled.reason)
            for_worker(_log, worker.name, task.id).info("took task (%s)", pulled.reason)

            if task.status is TaskStatus.IN_REVIEW:
                action = self.review.review_task(worker, task)
                self._set_idle(worker)
                return CycleResult(worker_id, "reviewed", task.id,
                                   success=action != "review_failed", message=action)

            if is_complex(task) and worker.can_decompose:
                outcome = self.decomposer.decompose(worker, task)
                if outcome is not DecompositionOutcome.FALLBACK:
                    self._set_idle(worker)
                    return CycleResult(worker_id, outcome.value, task.id)
                task = self.store.require_task(task.id)

            return self._execute(worker, task)
        except WorkerNotFoundError:
            raise
        except Exception as e:
            for_worker(_log, worker.name, task.id if task else None).exception("cycle failed")
            if task is None:
                self._set_idle(worker)
                return CycleResult(worker_id, "error", success=False, message=str(e))
            return self._fail(worker, task, f"{type(e).__name__}: {e}",
                              EscalationLevel.SELF_RESOLVE)

    # ── Execute ───────────────────────────────────────────────

    def _execute(self, worker: Worker, task: Task) -> CycleResult:
        role = self.store.get_role(worker.role_id)
        prompt = execution_prompt(task, self._dependency_context(task), task.feedback)
        try:
            response = self.brain.ask(
                "execution", worker, task, prompt, build_system_prompt(role),
                allow_tools=task_category(task) != "analysis", record=False,
            )
        except BrainExecutionError as e:
            return self._fail(worker, task, str(e), EscalationLevel.SELF_RESOLVE)

        validation = self.quality.validate(task, response.output, response.cost)
        self.brain.record("execution", worker, task, response)
        if not validation.passed:
            start = (EscalationLevel.SELF_RESOLVE if validation.can_retry
                     else EscalationLevel.TEAM_COLLABORATION)
            return self._fail(worker, task, validation.reason, start)

        self.store.save_result(ResultDocument(task.id, worker.id, response.output))
        self.store.update_task(task.id, feedback=None)

        if self._needs_code_review(task):
            self._open_pull_request(worker, task, response.output)
            self._set_idle(worker)
            return CycleResult(worker.id, "awaiting_review", task.id)

        self.pool.complete_task(task.id)
        for_worker(_log, worker.name, task.id).info("completed")
        self._roll_up_parent(task)
        if worker.is_temporary:
            self.registry.destroy_temporary(worker.id)
        else:
            self._set_idle(worker)
        return CycleResult(worker.id, "completed", task.id, message=response.output[:200])

    def _needs_code_review(self, task: Task) -> bool:
        return (self.codehost is not None and task.reviewer_worker_id is not None
                and task.type in CODE_TYPES)

    def _open_pull_request(self, worker: Worker, task: Task, output: str) -> None:
        branch = self.codehost.create_branch(task.id, f"hollon/{task.id}")
        self.codehost.open_pull_request(task.id, branch, task.title, output,
                                        author_worker_id=worker.id)
        self.store.update_task(task.id, status=TaskStatus.READY_FOR_REVIEW)
        _log.info("Task %s ready for review on %s", task.id, branch)

    def _dependency_context(self, task: Task) -> str:
        parts = []
        for dep_id in task.dependencies:
            doc = self.store.get_result(dep_id)
            dep = self.store.get_task(dep_id)
            if doc is not None and dep is not None:
                parts.append(f"--- Result from task '{dep.title}' ---\n{doc.content}")
        return "\n\n".join(parts)

    def _roll_up_parent(self, task: Task) -> None:
        """Hand a parent to its owner for review once every live subtask is done."""
        parent = self.store.get_task(task.parent_task_id)
        if parent is None or parent.is_terminal or parent.status is TaskStatus.READY_FOR_REVIEW:
            return
        live = [c for c in self.store.children(parent.id) if c.status is not TaskStatus.CANCELLED]
        if live and all(c.status is TaskStatus.COMPLETED for c in live):
            self.store.update_task(
                parent.id, status=TaskStatus.READY_FOR_REVIEW,
                reviewer_worker_id=parent.assigned_worker_id or parent.reviewer_worker_id,
            )
            _log.info("All subtasks of %s done; parent ready for review", parent.id)

    # ── Failure path ──────────────────────────────────────────

    def _fail(self, worker: Worker, task: Task, reason: str,
              start: EscalationLevel) -> CycleResult:
        """Fail the task and escalate. A re-queued retry keeps its worker, temporary or not."""
        self.pool.fail_task(task.id, reason)
        escalation = None
        try:
            escalation = self.escalation.escalate(worker.id, task.id, reason, start)
        except Exception as e:
            _log.error("Escalation for task %s failed: %s", task.id, e)

        retried = escalation is not None and escalation.action == "retry"
        if worker.is_temporary and not retried:
            self.registry.destroy_temporary(worker.id)
        else:
            self._set_idle(worker)
        return CycleResult(
            worker.id, "retry" if retried else "failed", task.id, success=False,
            message=reason if escalation is None else f"{reason} [{escalation.level.name}]",
        )

    def _set_idle(self, worker: Worker) -> None:
        if self.registry.find_by_id(worker.id) is not None:
            self.registry.update_status(worker.id, WorkerStatus.IDLE)

    # ── Conflicts ─────────────────────────────────────────────

    def detect_conflicts(self, context: ConflictContext):
        return self.conflicts.detect_and_resolve(context)
