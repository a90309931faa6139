"""Tests for the output quality gates."""

from datetime import timedelta

import pytest

from hollon.models import CostRecord, TaskStatus, TaskType, now_utc
from hollon.quality import QualityGate, task_category

from conftest import ANALYSIS_OUTPUT, CODE_OUTPUT


@pytest.fixture
def gate(store):
    return QualityGate(store)


class TestTaskCategory:

    @pytest.mark.parametrize("task_type,expected", [
        (TaskType.IMPLEMENTATION, "code"),
        (TaskType.BUG_FIX, "code"),
        (TaskType.ANALYSIS, "analysis"),
        (TaskType.RESEARCH, "analysis"),
        (TaskType.DOCUMENTATION, "analysis"),
    ])
    def test_by_type(self, add_task, task_type, expected):
        assert task_category(add_task("x", type=task_type)) == expected

    def test_by_keywords(self, add_task):
        assert task_category(add_task("Refactor the parser", type=TaskType.REVIEW)) == "code"
        assert task_category(add_task("Investigate latency", type=TaskType.REVIEW)) == "analysis"
        assert task_category(add_task("Tidy meeting notes", type=TaskType.REVIEW)) is None


class TestGates:

    def test_code_output_passes(self, gate, add_task):
        result = gate.validate(add_task("endpoint"), CODE_OUTPUT)
        assert result.passed
        assert result.failures == []

    def test_empty_output_is_retryable(self, gate, add_task):
        result = gate.validate(add_task("endpoint"), "   ")
        assert not result.passed
        assert result.can_retry
        assert [f.gate for f in result.failures] == ["non_empty"]

    def test_code_needs_fenced_block(self, gate, add_task):
        result = gate.validate(add_task("endpoint"), "I wrote the code, trust me.")
        assert not result.passed
        assert result.can_retry
        assert "fenced code block" in result.reason

    def test_analysis_needs_heading(self, gate, add_task):
        task = add_task("latency", type=TaskType.ANALYSIS)
        assert not gate.validate(task, "It is slow.").passed
        assert gate.validate(task, ANALYSIS_OUTPUT).passed

    def test_uncategorized_has_no_format_rule(self, gate, add_task):
        task = add_task("Tidy meeting notes", type=TaskType.REVIEW)
        assert gate.validate(task, "done").passed

    def test_daily_cost_limit(self, gate, store, org, add_task):
        org.daily_cost_limit = 1.0
        store.record_cost(CostRecord(organization_id=org.id, kind="execution", cost=0.9))
        task = add_task("endpoint")

        assert gate.validate(task, CODE_OUTPUT, cost=0.05).passed
        result = gate.validate(task, CODE_OUTPUT, cost=0.2)
        assert not result.passed
        assert not result.can_retry
        assert result.failures[0].gate == "cost"

    def test_overdue_task_fails(self, gate, add_task):
        task = add_task("endpoint", due_date=now_utc() - timedelta(hours=1))
        result = gate.validate(task, CODE_OUTPUT)
        assert not result.passed
        assert not result.can_retry

    def test_open_dependencies_fail(self, gate, add_task):
        dep = add_task("first", status=TaskStatus.IN_PROGRESS)
        task = add_task("second", dependencies=[dep.id])
        result = gate.validate(task, CODE_OUTPUT)
        assert not result.passed
        assert dep.id in result.reason

    def test_failures_are_concatenated(self, gate, add_task):
        task = add_task("endpoint", due_date=now_utc() - timedelta(hours=1))
        result = gate.validate(task, "")
        assert [f.gate for f in result.failures] == ["non_empty", "due_date"]
        assert "Output was empty." in result.reason
        assert "was due" in result.reason
        # one non-retryable failure makes the whole result non-retryable
        assert not result.can_retry
