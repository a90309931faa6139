"""Notification port and the in-process message bus that implements it."""

import logging
import queue
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

_log = logging.getLogger(__name__)


class MessageType(Enum):
    COLLABORATION_REQUEST = "collaboration_request"  # escalation L2 → helper
    DECISION_REQUEST = "decision_request"            # escalation L3 → team leader
    ESCALATION = "escalation"                        # escalation L4 → upper team leader
    APPROVAL_REQUEST = "approval_request"            # escalation L5 → humans
    CONFLICT_NOTICE = "conflict_notice"              # conflict resolver → blocked worker
    REVIEW_FEEDBACK = "review_feedback"              # reviewer → task assignee
    TASK_UPDATE = "task_update"


@dataclass
class Message:
    type: MessageType
    sender: str               # worker id or "system"
    recipient: str            # worker id or "humans"
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    msg_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class Notifier(ABC):
    """Fire-and-forget delivery of messages to workers or humans."""

    @abstractmethod
    def send(self, sender: str, recipient: str, type: MessageType,
             content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        ...


def notify(notifier: Optional[Notifier], sender: str, recipient: str,
           type: MessageType, content: str,
           metadata: Optional[Dict[str, Any]] = None) -> bool:
    """Send through ``notifier``; delivery failures are logged, never raised."""
    if notifier is None:
        return False
    try:
        notifier.send(sender, recipient, type, content, metadata or {})
        return True
    except Exception as e:
        _log.warning("Notification %s to %s failed: %s", type.value, recipient, e)
        return False


# Maximum number of messages kept in history (ring buffer)
_MAX_HISTORY = 200


class MessageBus(Notifier):
    """Thread-safe bus backed by one queue.Queue per recipient."""

    def __init__(self, max_history: int = _MAX_HISTORY):
        self._inboxes: Dict[str, "queue.Queue[Message]"] = {}
        self._lock = threading.Lock()
        self._history: "deque[Message]" = deque(maxlen=max_history)

    def _inbox(self, recipient: str) -> "queue.Queue[Message]":
        with self._lock:
            inbox = self._inboxes.get(recipient)
            if inbox is None:
                inbox = self._inboxes[recipient] = queue.Queue()
            return inbox

    def send(self, sender: str, recipient: str, type: MessageType,
             content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        msg = Message(type=type, sender=sender, recipient=recipient,
                      content=content, metadata=dict(metadata or {}))
        inbox = self._inbox(recipient)
        with self._lock:
            self._history.append(msg)
        inbox.put(msg)

    def recv(self, recipient: str, timeout: float = 0.0) -> Optional[Message]:
        inbox = self._inbox(recipient)
        try:
            if timeout <= 0:
                return inbox.get_nowait()
            return inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, recipient: str) -> List[Message]:
        """Pop every pending message for ``recipient``."""
        messages = []
        while True:
            msg = self.recv(recipient)
            if msg is None:
                return messages
            messages.append(msg)

    def get_history(self) -> List[Message]:
        """Return a snapshot of recent message history."""
        with self._lock:
            return list(self._history)

    def queue_depth(self, recipient: str) -> int:
        with self._lock:
            inbox = self._inboxes.get(recipient)
        return inbox.qsize() if inbox else 0
