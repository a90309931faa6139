"""Human approval requests: the last stop of escalation and conflict handling."""

import logging
from datetime import timedelta
from typing import List, Optional

from .messages import MessageType, Notifier, notify
from .models import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalType,
    now_utc,
)
from .store import Store

_log = logging.getLogger(__name__)

HUMANS = "humans"


class ApprovalService:
    def __init__(self, store: Store, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier

    def create(self, type: ApprovalType, organization_id: str, title: str,
               description: str, reasoning: str = "", task_id: Optional[str] = None,
               worker_id: Optional[str] = None, escalation_level: Optional[int] = None,
               risk_level: str = "high") -> ApprovalRequest:
        approval = self.store.add_approval(ApprovalRequest(
            type=type, organization_id=organization_id, title=title,
            description=description, reasoning=reasoning, task_id=task_id,
            worker_id=worker_id, escalation_level=escalation_level,
            risk_level=risk_level,
        ))
        _log.warning("Approval request %s created: %s", approval.id, title)
        notify(self.notifier, worker_id or "system", HUMANS, MessageType.APPROVAL_REQUEST,
               f"{title}\n\n{description}",
               {"approval_id": approval.id, "task_id": task_id, "risk_level": risk_level})
        return approval

    def pending(self, organization_id: Optional[str] = None) -> List[ApprovalRequest]:
        return self.store.list_approvals(organization_id, status=ApprovalStatus.PENDING)

    def has_pending(self, task_id: str) -> bool:
        return any(a.task_id == task_id for a in self.pending())

    def approve(self, approval_id: str, comment: str = "") -> ApprovalRequest:
        return self._decide(approval_id, ApprovalStatus.APPROVED, comment)

    def reject(self, approval_id: str, comment: str = "") -> ApprovalRequest:
        return self._decide(approval_id, ApprovalStatus.REJECTED, comment)

    def expire_stale(self, max_age: timedelta) -> List[ApprovalRequest]:
        """Expire pending requests older than ``max_age``."""
        cutoff = now_utc() - max_age
        expired = []
        for approval in self.pending():
            if approval.created_at < cutoff:
                expired.append(self._decide(approval.id, ApprovalStatus.EXPIRED, "expired"))
        return expired

    def _decide(self, approval_id: str, status: ApprovalStatus,
                comment: str) -> ApprovalRequest:
        approval = self.store.get_approval(approval_id)
        if approval.status is not ApprovalStatus.PENDING:
            raise ValueError(
                f"Approval request {approval_id} is already {approval.status.value}"
            )
        return self.store.update_approval(
            approval_id, status=status, reviewed_at=now_utc(),
            review_comment=comment or None,
        )
