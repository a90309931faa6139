"""QualityGate: acceptance checks an execution's output must pass."""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from .models import CODE_TYPES, Task, TaskType, now_utc
from .store import Store

_CODE_KEYWORDS_RE = re.compile(
    r"\b(implement\w*|code|coding|fix|bug|refactor\w*|function|class|endpoint|script)\b",
    re.IGNORECASE,
)
_ANALYSIS_KEYWORDS_RE = re.compile(
    r"\b(analy[sz]\w*|research\w*|investigat\w*|evaluat\w*|report|assess\w*|document\w*)\b",
    re.IGNORECASE,
)
_FENCED_BLOCK_RE = re.compile(r"```[^\n]*\n.*?```", re.DOTALL)
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+\S", re.MULTILINE)

_ANALYSIS_TYPES = frozenset({TaskType.ANALYSIS, TaskType.RESEARCH, TaskType.DOCUMENTATION})


@dataclass
class GateFailure:
    gate: str
    message: str
    retryable: bool


@dataclass
class ValidationResult:
    passed: bool
    can_retry: bool
    reason: str = ""
    failures: List[GateFailure] = field(default_factory=list)


def task_category(task: Task) -> Optional[str]:
    """Return "code", "analysis" or None for tasks with no format requirement."""
    if task.type in CODE_TYPES:
        return "code"
    if task.type in _ANALYSIS_TYPES:
        return "analysis"
    text = f"{task.title}\n{task.description}"
    if _CODE_KEYWORDS_RE.search(text):
        return "code"
    if _ANALYSIS_KEYWORDS_RE.search(text):
        return "analysis"
    return None


class QualityGate:
    """Five ordered gates. Every failed gate contributes one feedback line."""

    def __init__(self, store: Store):
        self.store = store

    def validate(self, task: Task, output: str, cost: float = 0.0) -> ValidationResult:
        """Check ``output`` for ``task``; ``cost`` is what producing it spent (USD)."""
        failures: List[GateFailure] = []

        if not (output or "").strip():
            failures.append(GateFailure("non_empty", "Output was empty.", True))
        else:
            fmt = self._check_format(task, output)
            if fmt:
                failures.append(fmt)

        cost_failure = self._check_cost(task, cost)
        if cost_failure:
            failures.append(cost_failure)

        if task.due_date is not None and now_utc() > task.due_date:
            failures.append(GateFailure(
                "due_date", f"Task was due {task.due_date.isoformat()}.", False,
            ))

        unresolved = self.store.unresolved_dependencies(task)
        if unresolved:
            failures.append(GateFailure(
                "dependencies",
                f"Dependencies not completed: {', '.join(unresolved)}.", False,
            ))

        if not failures:
            return ValidationResult(passed=True, can_retry=False)
        return ValidationResult(
            passed=False,
            can_retry=all(f.retryable for f in failures),
            reason=" ".join(f.message for f in failures),
            failures=failures,
        )

    @staticmethod
    def _check_format(task: Task, output: str) -> Optional[GateFailure]:
        category = task_category(task)
        if category == "code" and not _FENCED_BLOCK_RE.search(output):
            return GateFailure(
                "format", "Code task output must include a fenced code block.", True,
            )
        if category == "analysis" and not _HEADING_RE.search(output):
            return GateFailure(
                "format", "Analysis output must include at least one markdown heading.", True,
            )
        return None

    def _check_cost(self, task: Task, cost: float) -> Optional[GateFailure]:
        org = self.store.get_organization(task.organization_id)
        if org is None or org.daily_cost_limit is None:
            return None
        spent = self.store.daily_cost(task.organization_id)
        if spent + cost > org.daily_cost_limit:
            return GateFailure(
                "cost",
                f"Daily cost limit exceeded (${spent + cost:.2f} of ${org.daily_cost_limit:.2f}).",
                False,
            )
        return None
