"""Domain records shared by every orchestration component."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Tasks ──────────────────────────────────────────────────────────


class TaskStatus(Enum):
    BACKLOG = "backlog"
    READY = "ready"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    READY_FOR_REVIEW = "ready_for_review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    WAITING_FOR_WORKER = "waiting_for_worker"


TERMINAL_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.CANCELLED,
    TaskStatus.FAILED,
})


class TaskType(Enum):
    IMPLEMENTATION = "implementation"
    BUG_FIX = "bug_fix"
    ANALYSIS = "analysis"
    RESEARCH = "research"
    DOCUMENTATION = "documentation"
    REVIEW = "review"
    EPIC = "epic"
    TEAM_EPIC = "team_epic"


COMPOSITE_TYPES = frozenset({TaskType.EPIC, TaskType.TEAM_EPIC})
CODE_TYPES = frozenset({TaskType.IMPLEMENTATION, TaskType.BUG_FIX})


class TaskPriority(Enum):
    P1_CRITICAL = "P1"
    P2_HIGH = "P2"
    P3_MEDIUM = "P3"
    P4_LOW = "P4"

    @property
    def rank(self) -> int:
        """Smaller is more urgent."""
        return int(self.value[1])


@dataclass
class Task:
    title: str
    organization_id: str
    description: str = ""
    id: str = field(default_factory=new_id)
    project_id: Optional[str] = None
    team_id: Optional[str] = None
    type: TaskType = TaskType.IMPLEMENTATION
    status: TaskStatus = TaskStatus.READY
    priority: TaskPriority = TaskPriority.P3_MEDIUM
    parent_task_id: Optional[str] = None
    assigned_worker_id: Optional[str] = None
    creator_worker_id: Optional[str] = None
    reviewer_worker_id: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    blocked_by: List[str] = field(default_factory=list)
    depth: int = 0
    estimated_complexity: str = "low"
    story_points: Optional[int] = None
    required_skills: List[str] = field(default_factory=list)
    affected_files: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    retry_count: int = 0
    review_count: int = 0
    due_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=now_utc)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    feedback: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_composite(self) -> bool:
        return self.type in COMPOSITE_TYPES


# ── Workers, roles, teams ──────────────────────────────────────────


class WorkerStatus(Enum):
    IDLE = "idle"
    WORKING = "working"
    PAUSED = "paused"
    ERROR = "error"


class WorkerLifecycle(Enum):
    PERMANENT = "permanent"
    TEMPORARY = "temporary"


@dataclass
class Role:
    name: str
    organization_id: str
    id: str = field(default_factory=new_id)
    capabilities: List[str] = field(default_factory=list)
    available_for_spawn: bool = False
    system_prompt: str = ""


@dataclass
class Worker:
    name: str
    organization_id: str
    id: str = field(default_factory=new_id)
    team_id: Optional[str] = None
    role_id: Optional[str] = None
    status: WorkerStatus = WorkerStatus.IDLE
    lifecycle: WorkerLifecycle = WorkerLifecycle.PERMANENT
    parent_worker_id: Optional[str] = None
    depth: int = 0
    created_at: datetime = field(default_factory=now_utc)

    @property
    def is_temporary(self) -> bool:
        return self.lifecycle is WorkerLifecycle.TEMPORARY

    @property
    def can_decompose(self) -> bool:
        return self.lifecycle is WorkerLifecycle.PERMANENT and self.depth == 0


@dataclass
class Team:
    name: str
    organization_id: str
    id: str = field(default_factory=new_id)
    leader_worker_id: Optional[str] = None
    parent_team_id: Optional[str] = None


@dataclass
class Organization:
    name: str
    id: str = field(default_factory=new_id)
    daily_cost_limit: Optional[float] = None  # USD


# ── Conflicts and approvals ────────────────────────────────────────


class ConflictType(Enum):
    FILE = "file"
    RESOURCE = "resource"
    PRIORITY = "priority"
    DEADLINE = "deadline"


class ConflictStatus(Enum):
    DETECTED = "detected"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class ResolutionStrategy(Enum):
    SEQUENTIAL_EXECUTION = "sequential_execution"
    PRIORITY_PREEMPTION = "priority_preemption"
    MANUAL_INTERVENTION = "manual_intervention"


@dataclass
class Conflict:
    type: ConflictType
    organization_id: str
    description: str
    task_ids: List[str]
    worker_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    status: ConflictStatus = ConflictStatus.DETECTED
    context: Dict[str, Any] = field(default_factory=dict)
    resolution_strategy: Optional[ResolutionStrategy] = None
    resolution_details: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)
    resolved_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalType(Enum):
    ESCALATION = "escalation"
    CONFLICT = "conflict"


@dataclass
class ApprovalRequest:
    type: ApprovalType
    organization_id: str
    title: str
    description: str
    id: str = field(default_factory=new_id)
    status: ApprovalStatus = ApprovalStatus.PENDING
    risk_level: str = "high"
    reasoning: str = ""
    task_id: Optional[str] = None
    worker_id: Optional[str] = None
    escalation_level: Optional[int] = None
    created_at: datetime = field(default_factory=now_utc)
    reviewed_at: Optional[datetime] = None
    review_comment: Optional[str] = None


# ── Ledgers ────────────────────────────────────────────────────────


@dataclass
class CostRecord:
    organization_id: str
    kind: str
    cost: float
    worker_id: Optional[str] = None
    task_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    timestamp: datetime = field(default_factory=now_utc)


@dataclass
class ResultDocument:
    task_id: str
    worker_id: str
    content: str
    created_at: datetime = field(default_factory=now_utc)
