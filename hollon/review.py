"""Review cycle: manager scans, Review Mode decisions and code-review verdicts."""

from dataclasses import dataclass
from typing import List, Optional

from .brain import MeteredBrain
from .codehost import CodeHost, PRStatus, PullRequest
from .decisions import parse_code_review, parse_parent_completion, parse_review
from .decomposition import Decomposer, DecompositionOutcome
from .errors import SpawnLimitReachedError
from .escalation import EscalationChain, EscalationLevel
from .logger import get_logger
from .messages import MessageType, Notifier, notify
from .models import Role, Task, TaskStatus, Worker
from .pool import TaskPool
from .prompts import (
    build_system_prompt,
    code_review_prompt,
    parent_completion_prompt,
    review_prompt,
)
from .store import Store
from .workers import TemporaryWorkerSpec, WorkerRegistry

_log = get_logger(__name__)


@dataclass
class ManagerCycleResult:
    promoted: int = 0          # READY_FOR_REVIEW → IN_REVIEW without code review
    reviews_requested: int = 0
    verdicts_handled: int = 0
    escalated: int = 0         # reviews out of attempts, handed to a human


def _all_completed(children: List[Task]) -> bool:
    live = [c for c in children if c.status is not TaskStatus.CANCELLED]
    return bool(live) and all(c.status is TaskStatus.COMPLETED for c in live)


class ReviewCycle:
    def __init__(self, store: Store, pool: TaskPool, registry: WorkerRegistry,
                 brain: MeteredBrain, decomposer: Decomposer, escalation: EscalationChain,
                 codehost: Optional[CodeHost] = None, notifier: Optional[Notifier] = None,
                 review_capability: str = "review", max_review_count: int = 3):
        self.store = store
        self.pool = pool
        self.registry = registry
        self.brain = brain
        self.decomposer = decomposer
        self.escalation = escalation
        self.codehost = codehost
        self.notifier = notifier
        self.review_capability = review_capability
        self.max_review_count = max_review_count

    # ── Manager cycle ─────────────────────────────────────────

    def run_manager_cycle(self, manager_id: str) -> ManagerCycleResult:
        result = ManagerCycleResult()
        manager = self.registry.require(manager_id)

        if self.codehost is not None:
            for task in self.store.list_tasks(
                manager.organization_id,
                where=lambda t: (t.status is TaskStatus.IN_REVIEW
                                 and t.reviewer_worker_id == manager.id
                                 and not t.is_composite),
            ):
                for pr in self.codehost.find_pull_requests_by_task(task.id):
                    if pr.status in (PRStatus.APPROVED, PRStatus.CHANGES_REQUESTED):
                        self.handle_review_result(manager, task, pr)
                        result.verdicts_handled += 1
                        break

        for task in self.store.list_tasks(
            manager.organization_id,
            where=lambda t: (t.status is TaskStatus.READY_FOR_REVIEW
                             and t.reviewer_worker_id == manager.id),
        ):
            children = self.store.children(task.id)
            if task.is_composite or _all_completed(children):
                self.store.update_task(task.id, status=TaskStatus.IN_REVIEW,
                                       assigned_worker_id=task.assigned_worker_id or manager.id)
                result.promoted += 1
                continue
            if self._request_code_review(manager, task):
                result.reviews_requested += 1

        result.escalated = self._escalate_stalled_reviews(manager)
        return result

    def _escalate_stalled_reviews(self, manager: Worker) -> int:
        """Hand IN_REVIEW tasks that used up their review attempts to a human, once."""
        stalled = self.store.list_tasks(
            manager.organization_id,
            where=lambda t: (t.status is TaskStatus.IN_REVIEW
                             and manager.id in (t.assigned_worker_id, t.reviewer_worker_id)
                             and t.review_count >= self.max_review_count),
        )
        count = 0
        for task in stalled:
            if self.escalation.approvals.has_pending(task.id):
                continue
            self.escalation.escalate(
                manager.id, task.id,
                f"No review decision after {task.review_count} attempts",
                start_level=EscalationLevel.HUMAN,
            )
            count += 1
        return count

    def _request_code_review(self, manager: Worker, task: Task) -> bool:
        if self.codehost is None:
            _log.info("No code host configured; task %s cannot be reviewed", task.id)
            return False
        prs = [p for p in self.codehost.find_pull_requests_by_task(task.id)
               if p.status in (PRStatus.DRAFT, PRStatus.READY_FOR_REVIEW)]
        if not prs:
            _log.info("Task %s has no open pull request; skipping review", task.id)
            return False
        role = self._review_role(manager.organization_id)
        if role is None:
            _log.error("No role with '%s' capability; task %s not reviewed",
                       self.review_capability, task.id)
            return False
        try:
            reviewer = self.registry.create_temporary(TemporaryWorkerSpec(
                name=f"Reviewer-{task.id[:8]}",
                organization_id=manager.organization_id,
                team_id=manager.team_id,
                role_id=role.id,
                parent_worker_id=manager.id,
                depth=manager.depth + 1,
            ))
        except SpawnLimitReachedError as e:
            _log.warning("Review of task %s deferred: %s", task.id, e)
            return False
        self.codehost.request_review(prs[0].id, reviewer.id)
        self.store.update_task(task.id, status=TaskStatus.IN_REVIEW)
        _log.info("Reviewer %s assigned to task %s", reviewer.name, task.id)
        return True

    def _review_role(self, organization_id: str) -> Optional[Role]:
        roles = [r for r in self.store.list_roles(organization_id)
                 if self.review_capability in r.capabilities]
        spawnable = [r for r in roles if r.available_for_spawn]
        return (spawnable or roles or [None])[0]

    # ── Code review (temporary reviewer) ──────────────────────

    def perform_code_reviews(self, reviewer: Worker) -> int:
        """Review every pull request waiting on ``reviewer``. Returns how many got a verdict."""
        if self.codehost is None:
            return 0
        done = 0
        for pr in self.codehost.find_pull_requests_by_reviewer(reviewer.id, PRStatus.READY_FOR_REVIEW):
            task = self.store.get_task(pr.task_id)
            if task is None:
                continue
            try:
                response = self.brain.ask(
                    "code_review", reviewer, task, code_review_prompt(task, pr),
                    build_system_prompt(self.store.get_role(reviewer.role_id)),
                )
                verdict = parse_code_review(response.output)
            except Exception as e:
                _log.warning("Code review of PR %s failed: %s", pr.id, e)
                continue
            self.codehost.submit_review(pr.id, verdict.approved, verdict.comments)
            done += 1
        return done

    def handle_review_result(self, manager: Worker, task: Task, pr: PullRequest) -> None:
        if pr.status is PRStatus.APPROVED:
            self.codehost.merge(pr.id)
            self.pool.complete_task(task.id)
            _log.info("Task %s approved and merged", task.id)
            self.registry.destroy_temporary(pr.reviewer_worker_id)
            self.registry.destroy_temporary(task.assigned_worker_id)
            self.check_parent_completion(task)
        else:
            feedback = pr.review_comments or "Changes requested."
            self.codehost.close(pr.id)
            self.store.update_task(
                task.id, status=TaskStatus.READY, feedback=feedback,
                description=f"{task.description}\n\n## Review feedback\n{feedback}",
            )
            if task.assigned_worker_id:
                notify(self.notifier, manager.id, task.assigned_worker_id,
                       MessageType.REVIEW_FEEDBACK, feedback, {"task_id": task.id})
            _log.info("Task %s sent back for changes", task.id)
            self.registry.destroy_temporary(pr.reviewer_worker_id)

    # ── Review Mode ───────────────────────────────────────────

    def review_task(self, worker: Worker, task: Task) -> str:
        """Ask the Brain what to do with delegated work and apply the decision."""
        children = self.store.children(task.id)
        try:
            response = self.brain.ask(
                "review", worker, task,
                review_prompt(task, children, self.store.get_result),
                build_system_prompt(self.store.get_role(worker.role_id)),
            )
            decision = parse_review(response.output)
        except Exception as e:
            _log.warning("Review of task %s failed: %s", task.id, e)
            if task.review_count >= self.max_review_count:
                self.escalation.escalate(
                    worker.id, task.id, f"Review could not reach a decision: {e}",
                    start_level=EscalationLevel.HUMAN,
                )
            return "review_failed"

        _log.info("Review of task %s: %s (%s)", task.id, decision.action, decision.reasoning)
        child_ids = {c.id for c in children}

        if decision.action == "complete":
            self.pool.complete_task(task.id)
            self.check_parent_completion(task)
        elif decision.action == "rework":
            for sub_id in decision.subtask_ids:
                if sub_id not in child_ids:
                    _log.warning("Rework names unknown subtask %s", sub_id)
                    continue
                sub = self.store.get_task(sub_id)
                assignee = sub.assigned_worker_id
                if not assignee or self.store.get_worker(assignee) is None:
                    assignee = self.decomposer.restaff(worker, sub)
                self.store.update_task(
                    sub_id, status=TaskStatus.READY, description=decision.rework_instructions,
                    retry_count=sub.retry_count + 1, feedback=decision.reasoning,
                    completed_at=None, assigned_worker_id=assignee,
                )
            self.store.update_task(task.id, status=TaskStatus.IN_PROGRESS, review_count=0)
        elif decision.action == "add_tasks":
            self._add_subtasks(worker, task, decision.new_subtasks)
        elif decision.action == "redirect":
            for sub_id in decision.cancel_subtask_ids:
                if sub_id not in child_ids:
                    continue
                sub = self.store.update_task(sub_id, status=TaskStatus.CANCELLED)
                self.registry.destroy_temporary(sub.assigned_worker_id)
            self.store.update_task(
                task.id, status=TaskStatus.READY, review_count=0,
                description=f"{task.description}\n\n## New direction\n{decision.new_direction}",
            )
            self.decomposer.decompose(worker, self.store.require_task(task.id))
        return decision.action

    def _add_subtasks(self, worker: Worker, task: Task, specs) -> None:
        try:
            self.decomposer.create_subtasks(worker, task, specs)
        except SpawnLimitReachedError as e:
            _log.warning("Task %s parked: %s", task.id, e)
            self.store.update_task(task.id, status=TaskStatus.WAITING_FOR_WORKER, review_count=0)
            return
        self.store.update_task(task.id, status=TaskStatus.IN_PROGRESS, review_count=0)

    # ── Parent completion ─────────────────────────────────────

    def check_parent_completion(self, task: Task) -> None:
        """Walk up from ``task`` completing parents whose children are all done."""
        current = task
        while current.parent_task_id:
            parent = self.store.get_task(current.parent_task_id)
            if parent is None or parent.is_terminal:
                return
            children = self.store.children(parent.id)
            if not _all_completed(children):
                return
            owner = self.store.get_worker(parent.assigned_worker_id or "") or \
                self.store.get_worker(parent.creator_worker_id or "")
            if owner is None:
                _log.warning("Parent task %s has no live owner; leaving it for review", parent.id)
                self._park_for_review(parent, None)
                return
            try:
                response = self.brain.ask(
                    "parent_completion", owner, parent,
                    parent_completion_prompt(parent, children, self.store.get_result),
                    build_system_prompt(self.store.get_role(owner.role_id)),
                )
                decision = parse_parent_completion(response.output)
            except Exception as e:
                _log.warning("Completion check for parent %s failed: %s", parent.id, e)
                self._park_for_review(parent, owner.id)
                return

            if decision.action == "add_tasks":
                _log.info("Parent %s needs more work: %s", parent.id, decision.reason)
                self.store.update_task(parent.id, status=TaskStatus.READY)
                outcome = self.decomposer.decompose(owner, self.store.require_task(parent.id))
                if outcome is DecompositionOutcome.FALLBACK:
                    _log.info("Parent %s will be executed directly by %s", parent.id, owner.name)
                return
            self.pool.complete_task(parent.id)
            _log.info("Parent task %s completed: %s", parent.id, decision.reason)
            current = parent

    def _park_for_review(self, parent: Task, reviewer_id: Optional[str]) -> None:
        self.store.update_task(
            parent.id, status=TaskStatus.READY_FOR_REVIEW,
            reviewer_worker_id=reviewer_id or parent.reviewer_worker_id,
        )
