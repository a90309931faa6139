"""Strict decoders for the JSON decisions the Brain returns.

Brain output is untrusted. Each call site has its own decode type; a missing
required field is a DecisionParseError, never a silent default.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import DecisionParseError
from .models import TaskPriority, TaskType

_FENCED_RE = re.compile(r'```(?:\w*)\s*\n(.*?)```', re.DOTALL)

REVIEW_ACTIONS = ("complete", "rework", "add_tasks", "redirect")
PARENT_ACTIONS = ("complete", "add_tasks")
CODE_REVIEW_VERDICTS = ("approved", "changes_requested")


def extract_json_object(raw: str, kind: str) -> Dict[str, Any]:
    """Pull one JSON object out of a fenced block or bare text."""
    text = (raw or "").strip()
    m = _FENCED_RE.search(text)
    if m:
        text = m.group(1).strip()
    if not text.startswith("{"):
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise DecisionParseError(kind, "no JSON object found")
        text = text[start:end + 1]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecisionParseError(kind, f"malformed JSON ({e.msg})")
    if not isinstance(data, dict):
        raise DecisionParseError(kind, "expected a JSON object")
    return data


def _require_str(data: Dict[str, Any], key: str, kind: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise DecisionParseError(kind, f"missing required field '{key}'")
    return value.strip()


def _str_list(data: Dict[str, Any], key: str, kind: str) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise DecisionParseError(kind, f"'{key}' must be a list")
    return [str(v) for v in value if str(v).strip()]


def _parse_type(value: Any, kind: str) -> TaskType:
    try:
        return TaskType(str(value).strip().lower())
    except ValueError:
        raise DecisionParseError(kind, f"unknown task type '{value}'")


def _parse_priority(value: Any, kind: str) -> TaskPriority:
    text = str(value).strip().upper()
    for p in TaskPriority:
        if text in (p.value, p.name):
            return p
    raise DecisionParseError(kind, f"unknown priority '{value}'")


# ── Decomposition ─────────────────────────────────────────


@dataclass
class SubtaskSpec:
    title: str
    description: str
    type: TaskType
    priority: TaskPriority
    role_id: Optional[str] = None
    affected_files: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)   # titles within the batch


@dataclass
class DecompositionDecision:
    subtasks: List[SubtaskSpec]
    reasoning: str = ""


def _parse_subtask(item: Any, kind: str) -> SubtaskSpec:
    if not isinstance(item, dict):
        raise DecisionParseError(kind, "subtask entries must be objects")
    return SubtaskSpec(
        title=_require_str(item, "title", kind),
        description=_require_str(item, "description", kind),
        type=_parse_type(_require_str(item, "type", kind), kind),
        priority=_parse_priority(_require_str(item, "priority", kind), kind),
        role_id=item.get("roleId") or None,
        affected_files=_str_list(item, "affectedFiles", kind),
        dependencies=_str_list(item, "dependencies", kind),
    )


def _parse_subtask_list(data: Dict[str, Any], key: str, kind: str) -> List[SubtaskSpec]:
    items = data.get(key)
    if not isinstance(items, list) or not items:
        raise DecisionParseError(kind, f"'{key}' must be a non-empty list")
    return [_parse_subtask(item, kind) for item in items]


def parse_decomposition(raw: str) -> DecompositionDecision:
    kind = "decomposition"
    data = extract_json_object(raw, kind)
    return DecompositionDecision(
        subtasks=_parse_subtask_list(data, "subtasks", kind),
        reasoning=str(data.get("reasoning") or ""),
    )


# ── Review ────────────────────────────────────────────────


@dataclass
class ReviewDecision:
    action: str
    reasoning: str
    subtask_ids: List[str] = field(default_factory=list)
    rework_instructions: str = ""
    new_subtasks: List[SubtaskSpec] = field(default_factory=list)
    cancel_subtask_ids: List[str] = field(default_factory=list)
    new_direction: str = ""


def parse_review(raw: str) -> ReviewDecision:
    """Decode a review decision; each action also requires its own payload."""
    kind = "review"
    data = extract_json_object(raw, kind)
    action = _require_str(data, "action", kind).lower()
    if action not in REVIEW_ACTIONS:
        raise DecisionParseError(kind, f"unknown action '{action}'")
    decision = ReviewDecision(action=action, reasoning=_require_str(data, "reasoning", kind))

    if action == "rework":
        decision.subtask_ids = _str_list(data, "subtaskIds", kind)
        if not decision.subtask_ids:
            raise DecisionParseError(kind, "rework requires 'subtaskIds'")
        decision.rework_instructions = _require_str(data, "reworkInstructions", kind)
    elif action == "add_tasks":
        decision.new_subtasks = _parse_subtask_list(data, "newSubtasks", kind)
    elif action == "redirect":
        decision.cancel_subtask_ids = _str_list(data, "cancelSubtaskIds", kind)
        decision.new_direction = _require_str(data, "newDirection", kind)
    return decision


# ── Parent completion / code review ───────────────────────


@dataclass
class ParentCompletionDecision:
    action: str
    reason: str


def parse_parent_completion(raw: str) -> ParentCompletionDecision:
    kind = "parent-completion"
    data = extract_json_object(raw, kind)
    action = _require_str(data, "action", kind).lower()
    if action not in PARENT_ACTIONS:
        raise DecisionParseError(kind, f"unknown action '{action}'")
    return ParentCompletionDecision(action=action, reason=_require_str(data, "reason", kind))


@dataclass
class CodeReviewVerdict:
    verdict: str
    comments: str

    @property
    def approved(self) -> bool:
        return self.verdict == "approved"


def parse_code_review(raw: str) -> CodeReviewVerdict:
    kind = "code-review"
    data = extract_json_object(raw, kind)
    verdict = _require_str(data, "verdict", kind).lower()
    if verdict not in CODE_REVIEW_VERDICTS:
        raise DecisionParseError(kind, f"unknown verdict '{verdict}'")
    return CodeReviewVerdict(verdict=verdict, comments=str(data.get("comments") or ""))
