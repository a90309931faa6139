"""Tests for the execution cycle: pull, decompose or execute, validate, escalate."""

import json
import threading
from datetime import timedelta

import pytest

from hollon.brain import Brain, BrainResponse
from hollon.codehost import PRStatus
from hollon.config import OrchestrationConfig
from hollon.errors import BrainExecutionError, WorkerNotFoundError
from hollon.escalation import EscalationLevel
from hollon.models import (
    ApprovalStatus,
    TaskStatus,
    TaskType,
    WorkerLifecycle,
    WorkerStatus,
    now_utc,
)
from hollon.orchestrator import Orchestrator, is_complex

from conftest import CODE_OUTPUT


class TestIsComplex:

    @pytest.mark.parametrize("kwargs", [
        {"type": TaskType.EPIC},
        {"type": TaskType.TEAM_EPIC},
        {"estimated_complexity": "high"},
        {"dependencies": ["a", "b", "c", "d"]},
        {"required_skills": ["go", "sql", "k8s"]},
        {"story_points": 13},
    ])
    def test_single_signal_is_enough(self, add_task, kwargs):
        assert is_complex(add_task("big", **kwargs))

    def test_simple_task(self, add_task):
        assert not is_complex(add_task("small", story_points=8, dependencies=["a", "b", "c"],
                                       required_skills=["go", "sql"]))


class TestExecution:

    def test_simple_task_completes(self, orchestrator, store, brain, org, add_worker, add_task, team):
        dev = add_worker(team_id=team.id)
        task = add_task("Add endpoint", team_id=team.id)
        brain.push(CODE_OUTPUT)

        result = orchestrator.run_cycle(dev.id)

        assert result.outcome == "completed"
        assert result.success
        assert store.get_task(task.id).status is TaskStatus.COMPLETED
        assert store.get_result(task.id).content == CODE_OUTPUT
        assert store.get_worker(dev.id).status is WorkerStatus.IDLE
        assert [c.kind for c in store.cost_records(org.id)] == ["execution"]
        assert brain.requests[0].allow_tools is True

    def test_analysis_runs_read_only(self, orchestrator, brain, add_worker, add_task, team):
        dev = add_worker(team_id=team.id)
        add_task("Investigate", team_id=team.id, type=TaskType.ANALYSIS)
        brain.push("# Report\n\nAll fine.")
        assert orchestrator.run_cycle(dev.id).outcome == "completed"
        assert brain.requests[0].allow_tools is False

    def test_no_task(self, orchestrator, add_worker):
        dev = add_worker()
        result = orchestrator.run_cycle(dev.id)
        assert result.outcome == "no_task"
        assert result.success

    def test_paused_worker_does_nothing(self, orchestrator, brain, add_worker, add_task):
        dev = add_worker(status=WorkerStatus.PAUSED)
        add_task("mine", assigned_worker_id=dev.id)
        assert orchestrator.run_cycle(dev.id).outcome == "paused"
        assert brain.requests == []

    def test_unknown_worker(self, orchestrator):
        with pytest.raises(WorkerNotFoundError):
            orchestrator.run_cycle("ghost")

    def test_dependency_results_reach_prompt(self, orchestrator, store, brain, add_worker, add_task):
        dev = add_worker()
        first = add_task("Design schema", assigned_worker_id=dev.id)
        add_task("Write migrations", assigned_worker_id=dev.id, dependencies=[first.id],
                 status=TaskStatus.BLOCKED)
        brain.push("Tables: users, sessions\n```sql\ncreate table users();\n```",
                   CODE_OUTPUT)

        orchestrator.run_cycle(dev.id)
        orchestrator.run_cycle(dev.id)

        assert "Tables: users, sessions" in brain.requests[1].prompt


class TestFailurePath:

    def test_gate_failure_retries_with_feedback(self, orchestrator, store, brain, add_worker, add_task):
        dev = add_worker()
        task = add_task("Add endpoint", assigned_worker_id=dev.id)
        brain.push("I did it.", CODE_OUTPUT)

        result = orchestrator.run_cycle(dev.id)
        assert result.outcome == "retry"
        assert not result.success
        retried = store.get_task(task.id)
        assert retried.status is TaskStatus.READY
        assert retried.retry_count == 1
        assert "fenced code block" in retried.feedback

        assert orchestrator.run_cycle(dev.id).outcome == "completed"
        assert "fenced code block" in brain.requests[1].prompt
        assert store.get_task(task.id).feedback is None

    def test_brain_error_retries(self, orchestrator, store, brain, add_worker, add_task):
        dev = add_worker()
        task = add_task("Add endpoint", assigned_worker_id=dev.id)
        brain.push(BrainExecutionError("rate limited"))
        assert orchestrator.run_cycle(dev.id).outcome == "retry"
        assert "rate limited" in store.get_task(task.id).feedback

    def test_exhausted_retries_reach_a_human(self, orchestrator, store, brain, org, add_worker, add_task):
        dev = add_worker()
        task = add_task("Add endpoint", assigned_worker_id=dev.id, retry_count=3)
        brain.push("still no code")

        result = orchestrator.run_cycle(dev.id)
        assert result.outcome == "failed"
        assert "HUMAN" in result.message
        assert store.get_task(task.id).status is TaskStatus.FAILED
        [approval] = orchestrator.approvals.pending(org.id)
        assert approval.task_id == task.id
        assert approval.status is ApprovalStatus.PENDING

    def test_non_retryable_failure_skips_self_resolve(self, orchestrator, store, brain, add_worker,
                                                      add_task):
        dev = add_worker()
        task = add_task("Add endpoint", assigned_worker_id=dev.id,
                        due_date=now_utc() - timedelta(hours=1))
        brain.push(CODE_OUTPUT)

        assert orchestrator.run_cycle(dev.id).outcome == "failed"
        assert store.get_task(task.id).retry_count == 0
        levels = [e.level for e in orchestrator.escalation.history(task.id)]
        assert min(levels) > 1

    def test_failed_temporary_worker_is_destroyed(self, orchestrator, store, brain, add_worker,
                                                  add_task):
        temp = add_worker("temp", lifecycle=WorkerLifecycle.TEMPORARY, depth=1)
        add_task("sub", assigned_worker_id=temp.id, retry_count=3)
        brain.push("")
        orchestrator.run_cycle(temp.id)
        assert store.get_worker(temp.id) is None


def _plan(*titles):
    subtasks = [{"title": t, "description": t, "type": "implementation", "priority": "P3"}
                for t in titles]
    return "```json\n" + json.dumps({"subtasks": subtasks}) + "\n```"


class TestDelegation:

    def test_complex_task_is_delegated(self, orchestrator, store, brain, roles, add_worker, add_task):
        manager = add_worker("manager", role_id=roles["manager"].id)
        epic = add_task("Build auth", type=TaskType.EPIC, assigned_worker_id=manager.id)
        brain.push(_plan("Schema", "API"))

        result = orchestrator.run_cycle(manager.id)

        assert result.outcome == "delegated"
        assert len(store.children(epic.id)) == 2
        assert store.get_task(epic.id).status is TaskStatus.IN_PROGRESS

    def test_temporary_worker_cannot_decompose(self, orchestrator, store, brain, roles, add_worker,
                                               add_task):
        temp = add_worker("temp", lifecycle=WorkerLifecycle.TEMPORARY, depth=1)
        task = add_task("Big one", estimated_complexity="high", assigned_worker_id=temp.id)
        brain.push(CODE_OUTPUT)
        assert orchestrator.run_cycle(temp.id).outcome == "completed"
        assert store.children(task.id) == []

    def test_decomposition_failure_executes_directly(self, orchestrator, store, brain, roles,
                                                     add_worker, add_task):
        manager = add_worker("manager", role_id=roles["manager"].id)
        epic = add_task("Build auth", type=TaskType.EPIC, assigned_worker_id=manager.id)
        brain.push("not a plan", "# Done\n\nBuilt it myself.")
        assert orchestrator.run_cycle(manager.id).outcome == "completed"
        assert store.get_task(epic.id).status is TaskStatus.COMPLETED

    def test_subtasks_roll_up_to_parent_review(self, orchestrator, store, brain, roles, add_worker,
                                               add_task):
        manager = add_worker("manager", role_id=roles["manager"].id)
        epic = add_task("Build auth", type=TaskType.EPIC, assigned_worker_id=manager.id)
        brain.push(_plan("Schema"))
        orchestrator.run_cycle(manager.id)

        [sub] = store.children(epic.id)
        temp_id = sub.assigned_worker_id
        brain.push(CODE_OUTPUT)
        assert orchestrator.run_cycle(temp_id).outcome == "completed"

        assert store.get_worker(temp_id) is None
        parent = store.get_task(epic.id)
        assert parent.status is TaskStatus.READY_FOR_REVIEW
        assert parent.reviewer_worker_id == manager.id


class TestCodeReviewHandOff:

    def test_reviewed_subtask_opens_pull_request(self, reviewed_orchestrator, store, brain,
                                                 codehost, add_worker, add_task):
        manager = add_worker("manager")
        temp = add_worker("temp", lifecycle=WorkerLifecycle.TEMPORARY, depth=1)
        task = add_task("Add endpoint", assigned_worker_id=temp.id,
                        reviewer_worker_id=manager.id)
        brain.push(CODE_OUTPUT)

        result = reviewed_orchestrator.run_cycle(temp.id)

        assert result.outcome == "awaiting_review"
        assert store.get_task(task.id).status is TaskStatus.READY_FOR_REVIEW
        [pr] = codehost.find_pull_requests_by_task(task.id)
        assert pr.branch == f"hollon/{task.id}"
        assert pr.status is PRStatus.DRAFT
        assert pr.author_worker_id == temp.id
        # the author stays alive until the verdict is handled
        assert store.get_worker(temp.id) is not None


class _StallingBrain(Brain):
    """Never answers within the configured timeout until released."""

    def __init__(self):
        self.release = threading.Event()

    def execute(self, request):
        self.release.wait(5)
        return BrainResponse(output=CODE_OUTPUT)


class TestRepeatedCycles:

    def test_delegated_parent_is_not_decomposed_again(self, orchestrator, store, brain, org,
                                                      roles, add_worker, add_task):
        manager = add_worker("manager", role_id=roles["manager"].id)
        epic = add_task("Build auth", type=TaskType.EPIC, assigned_worker_id=manager.id)
        brain.push(_plan("Schema", "API"))
        assert orchestrator.run_cycle(manager.id).outcome == "delegated"

        result = orchestrator.run_cycle(manager.id)

        assert result.outcome == "no_task"
        assert len(store.children(epic.id)) == 2
        assert len(brain.requests) == 1
        assert orchestrator.registry.temporary_count(org.id) == 2
        assert store.get_task(epic.id).status is TaskStatus.IN_PROGRESS

    def test_blocked_subtask_worker_leaves_team_work_alone(self, orchestrator, store, brain,
                                                          add_worker, add_task, team):
        temp = add_worker("temp", lifecycle=WorkerLifecycle.TEMPORARY, depth=1, team_id=team.id)
        first = add_task("Schema", team_id=team.id, assigned_worker_id="other-temp")
        own = add_task("API", team_id=team.id, assigned_worker_id=temp.id,
                       dependencies=[first.id], status=TaskStatus.BLOCKED)
        unrelated = add_task("Fix typo", team_id=team.id)

        result = orchestrator.run_cycle(temp.id)

        assert result.outcome == "no_task"
        assert brain.requests == []
        assert store.get_task(unrelated.id).assigned_worker_id is None
        assert store.get_task(own.id).assigned_worker_id == temp.id
        assert store.get_worker(temp.id).status is WorkerStatus.IDLE

    def test_brain_error_keeps_temporary_worker_for_retry(self, orchestrator, store, brain,
                                                         add_worker, add_task):
        temp = add_worker("temp", lifecycle=WorkerLifecycle.TEMPORARY, depth=1)
        sub = add_task("Schema", assigned_worker_id=temp.id)
        brain.push(BrainExecutionError("overloaded"), CODE_OUTPUT)

        assert orchestrator.run_cycle(temp.id).outcome == "retry"
        assert store.get_worker(temp.id) is not None
        requeued = store.get_task(sub.id)
        assert requeued.status is TaskStatus.READY
        assert requeued.assigned_worker_id == temp.id

        assert orchestrator.run_cycle(temp.id).outcome == "completed"
        assert store.get_worker(temp.id) is None

    def test_unexpected_error_keeps_temporary_worker_for_retry(self, orchestrator, store, brain,
                                                              add_worker, add_task, monkeypatch):
        temp = add_worker("temp", lifecycle=WorkerLifecycle.TEMPORARY, depth=1)
        sub = add_task("Schema", assigned_worker_id=temp.id)
        brain.push(CODE_OUTPUT)

        def broken(*args, **kwargs):
            raise RuntimeError("gate offline")

        monkeypatch.setattr(orchestrator.quality, "validate", broken)
        result = orchestrator.run_cycle(temp.id)

        assert result.outcome == "retry"
        assert "gate offline" in store.get_task(sub.id).feedback
        assert store.get_worker(temp.id) is not None
        assert store.get_task(sub.id).assigned_worker_id == temp.id

    def test_brain_timeout_is_retried(self, store, add_worker, add_task):
        slow = _StallingBrain()
        orchestrator = Orchestrator(store, slow, settings=OrchestrationConfig(brain_timeout=0.05))
        dev = add_worker()
        task = add_task("Add endpoint", assigned_worker_id=dev.id)
        try:
            result = orchestrator.run_cycle(dev.id)
        finally:
            slow.release.set()

        assert result.outcome == "retry"
        retried = store.get_task(task.id)
        assert retried.status is TaskStatus.READY
        assert retried.retry_count == 1
        assert "timed out" in retried.feedback
        [event] = orchestrator.escalation.history(task.id)
        assert event.level is EscalationLevel.SELF_RESOLVE
