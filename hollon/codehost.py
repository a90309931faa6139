"""CodeHost port: branches, pull requests and review verdicts."""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .models import new_id


class PRStatus(Enum):
    DRAFT = "draft"
    READY_FOR_REVIEW = "ready_for_review"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"
    CLOSED = "closed"


@dataclass
class PullRequest:
    task_id: str
    branch: str
    title: str
    body: str = ""
    id: str = field(default_factory=new_id)
    author_worker_id: Optional[str] = None
    reviewer_worker_id: Optional[str] = None
    status: PRStatus = PRStatus.DRAFT
    review_comments: str = ""
    ci_status: str = "pending"


class CodeHost(ABC):
    """Source-hosting operations the orchestrator needs."""

    @abstractmethod
    def create_branch(self, task_id: str, name: str) -> str: ...

    @abstractmethod
    def open_pull_request(self, task_id: str, branch: str, title: str, body: str,
                          author_worker_id: Optional[str] = None) -> PullRequest: ...

    @abstractmethod
    def find_pull_requests_by_task(self, task_id: str) -> List[PullRequest]: ...

    @abstractmethod
    def find_pull_requests_by_reviewer(self, worker_id: str,
                                       status: Optional[PRStatus] = None) -> List[PullRequest]: ...

    @abstractmethod
    def request_review(self, pr_id: str, reviewer_worker_id: str) -> None: ...

    @abstractmethod
    def submit_review(self, pr_id: str, approved: bool, comments: str = "") -> PullRequest: ...

    @abstractmethod
    def merge(self, pr_id: str) -> None: ...

    @abstractmethod
    def close(self, pr_id: str) -> None: ...

    @abstractmethod
    def ci_status(self, pr_id: str) -> str: ...


class InMemoryCodeHost(CodeHost):
    """Thread-safe CodeHost kept entirely in memory."""

    def __init__(self):
        self._branches: Dict[str, str] = {}   # branch → task_id
        self._prs: Dict[str, PullRequest] = {}
        self._lock = threading.Lock()

    def create_branch(self, task_id: str, name: str) -> str:
        with self._lock:
            self._branches[name] = task_id
        return name

    def open_pull_request(self, task_id: str, branch: str, title: str, body: str,
                          author_worker_id: Optional[str] = None) -> PullRequest:
        pr = PullRequest(task_id=task_id, branch=branch, title=title, body=body,
                         author_worker_id=author_worker_id)
        with self._lock:
            self._prs[pr.id] = pr
        return pr

    def get(self, pr_id: str) -> PullRequest:
        with self._lock:
            pr = self._prs.get(pr_id)
        if pr is None:
            raise KeyError(f"Pull request not found: {pr_id}")
        return pr

    def find_pull_requests_by_task(self, task_id: str) -> List[PullRequest]:
        with self._lock:
            return [p for p in self._prs.values() if p.task_id == task_id]

    def find_pull_requests_by_reviewer(self, worker_id: str,
                                       status: Optional[PRStatus] = None) -> List[PullRequest]:
        with self._lock:
            return [
                p for p in self._prs.values()
                if p.reviewer_worker_id == worker_id
                and (status is None or p.status is status)
            ]

    def request_review(self, pr_id: str, reviewer_worker_id: str) -> None:
        pr = self.get(pr_id)
        with self._lock:
            pr.reviewer_worker_id = reviewer_worker_id
            pr.status = PRStatus.READY_FOR_REVIEW

    def submit_review(self, pr_id: str, approved: bool, comments: str = "") -> PullRequest:
        pr = self.get(pr_id)
        with self._lock:
            pr.status = PRStatus.APPROVED if approved else PRStatus.CHANGES_REQUESTED
            pr.review_comments = comments
        return pr

    def merge(self, pr_id: str) -> None:
        pr = self.get(pr_id)
        with self._lock:
            pr.status = PRStatus.MERGED

    def close(self, pr_id: str) -> None:
        pr = self.get(pr_id)
        with self._lock:
            pr.status = PRStatus.CLOSED

    def ci_status(self, pr_id: str) -> str:
        return self.get(pr_id).ci_status
