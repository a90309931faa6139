"""Tests for the escalation chain and approval requests."""

from datetime import timedelta

import pytest

from hollon.approvals import HUMANS, ApprovalService
from hollon.errors import WorkerNotFoundError
from hollon.escalation import EscalationChain, EscalationLevel
from hollon.messages import MessageType
from hollon.models import (
    ApprovalStatus,
    ApprovalType,
    TaskStatus,
    Team,
    WorkerLifecycle,
    WorkerStatus,
    now_utc,
)


@pytest.fixture
def approvals(store, bus):
    return ApprovalService(store, bus)


@pytest.fixture
def chain(store, approvals, bus):
    return EscalationChain(store, approvals, bus, max_retries=3)


class TestSelfResolve:

    def test_retry_requeues_with_feedback(self, chain, store, add_worker, add_task):
        dev = add_worker()
        task = add_task("flaky", status=TaskStatus.FAILED, assigned_worker_id=dev.id)

        result = chain.escalate(dev.id, task.id, "no code block")
        assert result.level is EscalationLevel.SELF_RESOLVE
        assert result.action == "retry"
        updated = store.get_task(task.id)
        assert updated.status is TaskStatus.READY
        assert updated.retry_count == 1
        assert updated.feedback == "no code block"

    def test_exhausted_retries_go_to_team(self, chain, bus, add_worker, add_task, team):
        dev = add_worker("dev", team_id=team.id)
        helper = add_worker("helper", team_id=team.id)
        task = add_task("stuck", retry_count=3, assigned_worker_id=dev.id)

        result = chain.escalate(dev.id, task.id, "still failing")
        assert result.level is EscalationLevel.TEAM_COLLABORATION
        assert result.helper_worker_id == helper.id
        assert result.attempts == [EscalationLevel.SELF_RESOLVE,
                                   EscalationLevel.TEAM_COLLABORATION]
        msg = bus.recv(helper.id)
        assert msg.type is MessageType.COLLABORATION_REQUEST
        assert msg.metadata["task_id"] == task.id

    def test_busy_peers_are_skipped(self, chain, add_worker, add_task, team):
        dev = add_worker("dev", team_id=team.id)
        add_worker("busy", team_id=team.id, status=WorkerStatus.WORKING)
        task = add_task("stuck", retry_count=3)
        result = chain.escalate(dev.id, task.id, "still failing")
        assert result.level > EscalationLevel.TEAM_COLLABORATION

    def test_temporary_teammates_are_not_asked(self, chain, bus, add_worker, add_task, team):
        dev = add_worker("dev", team_id=team.id)
        temp = add_worker("temp", team_id=team.id, lifecycle=WorkerLifecycle.TEMPORARY, depth=1)
        task = add_task("stuck", retry_count=3)
        result = chain.escalate(dev.id, task.id, "still failing")
        assert result.level > EscalationLevel.TEAM_COLLABORATION
        assert bus.recv(temp.id) is None


class TestUpperLevels:

    def test_team_leader(self, chain, store, bus, add_worker, add_task, team):
        leader = add_worker("lead", team_id=team.id, status=WorkerStatus.WORKING)
        team.leader_worker_id = leader.id
        dev = add_worker("dev", team_id=team.id)
        task = add_task("stuck", retry_count=3)

        result = chain.escalate(dev.id, task.id, "needs a call")
        assert result.level is EscalationLevel.TEAM_LEADER
        assert result.action == "leader_notified"
        assert bus.recv(leader.id).type is MessageType.DECISION_REQUEST

    def test_upper_team(self, chain, store, bus, org, add_worker, add_task, team):
        director = add_worker("director")
        upper = store.add_team(Team(name="Platform", organization_id=org.id,
                                    leader_worker_id=director.id))
        team.parent_team_id = upper.id
        dev = add_worker("dev", team_id=team.id)
        task = add_task("stuck", retry_count=3)

        result = chain.escalate(dev.id, task.id, "cross-team issue")
        assert result.level is EscalationLevel.UPPER_TEAM
        assert bus.recv(director.id).type is MessageType.ESCALATION

    def test_human_is_last_resort(self, chain, approvals, bus, org, add_worker, add_task):
        dev = add_worker("solo")
        task = add_task("stuck", retry_count=3)

        result = chain.escalate(dev.id, task.id, "out of ideas")
        assert result.level is EscalationLevel.HUMAN
        assert result.action == "approval_requested"
        pending = approvals.pending(org.id)
        assert [a.id for a in pending] == [result.pending_approval_id]
        assert pending[0].type is ApprovalType.ESCALATION
        assert pending[0].escalation_level == 5
        assert bus.recv(HUMANS).type is MessageType.APPROVAL_REQUEST

    def test_start_level_is_respected(self, chain, add_worker, add_task):
        dev = add_worker("solo")
        task = add_task("stuck")
        result = chain.escalate(dev.id, task.id, "overdue", EscalationLevel.TEAM_LEADER)
        assert result.attempts == [EscalationLevel.TEAM_LEADER, EscalationLevel.UPPER_TEAM,
                                   EscalationLevel.HUMAN]
        # a retry is never attempted above level 1
        assert result.action != "retry"

    def test_unknown_worker(self, chain, add_task):
        with pytest.raises(WorkerNotFoundError):
            chain.escalate("ghost", add_task("x").id, "boom")


class TestListenersAndHistory:

    def test_levels_are_monotonic(self, chain, add_worker, add_task):
        dev = add_worker("solo")
        task = add_task("stuck", retry_count=3)
        chain.escalate(dev.id, task.id, "boom")
        levels = [e.level for e in chain.history(task.id)]
        assert levels == sorted(levels)
        assert levels[-1] is EscalationLevel.HUMAN
        assert [e.handled for e in chain.history(task.id)][-1] is True

    def test_listener_errors_are_contained(self, chain, add_worker, add_task):
        seen = []

        def broken(event):
            raise RuntimeError("listener down")

        chain.add_listener(broken)
        chain.add_listener(seen.append)
        dev = add_worker()
        task = add_task("flaky")
        chain.escalate(dev.id, task.id, "boom")
        assert [e.level for e in seen] == [EscalationLevel.SELF_RESOLVE]


class TestApprovalService:

    def test_approve_once(self, approvals, org):
        req = approvals.create(ApprovalType.ESCALATION, org.id, "help", "details")
        approved = approvals.approve(req.id, "go ahead")
        assert approved.status is ApprovalStatus.APPROVED
        assert approved.review_comment == "go ahead"
        with pytest.raises(ValueError):
            approvals.reject(req.id)

    def test_expire_stale(self, approvals, store, org):
        old = approvals.create(ApprovalType.CONFLICT, org.id, "old", "details")
        store.update_approval(old.id, created_at=now_utc() - timedelta(days=3))
        fresh = approvals.create(ApprovalType.CONFLICT, org.id, "fresh", "details")

        expired = approvals.expire_stale(timedelta(days=1))
        assert [a.id for a in expired] == [old.id]
        assert [a.id for a in approvals.pending(org.id)] == [fresh.id]
