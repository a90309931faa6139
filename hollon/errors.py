"""Structured error types for the orchestration core."""


class HollonError(Exception):
    """Base error for all orchestration operations."""
    pass


class WorkerNotFoundError(HollonError):
    """Raised when a worker id does not resolve. The only error that escapes a cycle."""

    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        super().__init__(f"Worker not found: {worker_id}")


class TaskNotFoundError(HollonError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class BrainExecutionError(HollonError):
    """Raised when the reasoning engine fails or returns an unusable response."""

    def __init__(self, message: str):
        super().__init__(f"Brain error: {message}")


class BrainTimeoutError(BrainExecutionError):
    """Raised when a Brain call exceeds its timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        HollonError.__init__(self, f"Brain timed out after {timeout:g}s")


class DecisionParseError(HollonError):
    """Raised when a Brain decision is not valid JSON or lacks required fields."""

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"Invalid {kind} decision: {message}")


class DecompositionError(HollonError):
    """Raised when a task cannot be broken down; callers fall back to direct execution."""
    pass


class SpawnLimitReachedError(HollonError):
    """Raised when the registry refuses to create another temporary worker."""

    def __init__(self, organization_id: str, limit: int):
        self.organization_id = organization_id
        self.limit = limit
        super().__init__(
            f"Temporary worker limit reached for {organization_id} ({limit})"
        )


class ConflictNotFoundError(HollonError):
    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__(f"Conflict not found: {conflict_id}")


class ApprovalNotFoundError(HollonError):
    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval request not found: {approval_id}")
