"""Dispatcher: runs worker cycles concurrently, one thread per worker per round."""

import logging
import threading
from typing import List, Optional

from .errors import WorkerNotFoundError
from .models import TaskStatus, WorkerLifecycle, WorkerStatus
from .orchestrator import CycleResult, Orchestrator

_log = logging.getLogger(__name__)


class WorkerCycleThread(threading.Thread):
    """Daemon thread running one manager pass (for permanent workers) and one cycle."""

    def __init__(self, orchestrator: Orchestrator, worker_id: str, worker_name: str,
                 manage: bool):
        super().__init__(name=f"hollon-{worker_name}", daemon=True)
        self.orchestrator = orchestrator
        self.worker_id = worker_id
        self.manage = manage
        self.result: Optional[CycleResult] = None

    def run(self):
        try:
            if self.manage:
                self.orchestrator.review.run_manager_cycle(self.worker_id)
            self.result = self.orchestrator.run_cycle(self.worker_id)
        except WorkerNotFoundError:
            _log.info("Worker %s disappeared before its cycle", self.worker_id)
        except Exception as e:
            _log.error("Worker %s cycle crashed: %s", self.worker_id, e)
            self.result = CycleResult(self.worker_id, "error", success=False, message=str(e))


class Dispatcher:
    """Drives rounds of worker cycles for one organization (or all of them)."""

    def __init__(self, orchestrator: Orchestrator, organization_id: Optional[str] = None,
                 cycle_timeout: Optional[float] = None):
        self.orchestrator = orchestrator
        self.organization_id = organization_id
        self.cycle_timeout = cycle_timeout
        self._shutdown = threading.Event()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def run_round(self) -> List[CycleResult]:
        workers = [
            w for w in self.orchestrator.store.list_workers(self.organization_id)
            if w.status is not WorkerStatus.PAUSED
        ]
        threads = [
            WorkerCycleThread(
                self.orchestrator, w.id, w.name,
                manage=w.lifecycle is WorkerLifecycle.PERMANENT,
            )
            for w in workers
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(self.cycle_timeout)
            if t.is_alive():
                _log.warning("Worker %s still running after %ss", t.worker_id, self.cycle_timeout)
        return [t.result for t in threads if t.result is not None]

    def run(self, rounds: int, interval: float = 0.0) -> List[List[CycleResult]]:
        """Run up to ``rounds`` rounds, sleeping ``interval`` seconds between them.

        Stops early when shut down or when a round finds nothing to do.
        """
        history = []
        for i in range(rounds):
            if self._shutdown.is_set():
                break
            results = self.run_round()
            history.append(results)
            _log.info("Round %d: %s", i + 1, ", ".join(r.outcome for r in results) or "no workers")
            if self.is_idle(results):
                break
            if interval and self._shutdown.wait(interval):
                break
        return history

    def is_idle(self, results: List[CycleResult]) -> bool:
        """True when no worker found anything to do and nothing awaits review."""
        if any(r.outcome not in ("no_task", "paused") for r in results):
            return False
        return not self._pending_reviews()

    def _pending_reviews(self) -> bool:
        """Reviews a worker can still act on; those parked on a human approval don't count."""
        waiting = {a.task_id for a in self.orchestrator.approvals.pending(self.organization_id)}
        return bool(self.orchestrator.store.list_tasks(
            self.organization_id,
            where=lambda t: (t.status in (TaskStatus.READY_FOR_REVIEW, TaskStatus.IN_REVIEW)
                             and t.id not in waiting),
        ))
