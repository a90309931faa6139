"""WorkerRegistry: creation and teardown of workers, with a temporary-worker cap."""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from .errors import SpawnLimitReachedError, WorkerNotFoundError
from .models import (
    TaskStatus,
    Worker,
    WorkerLifecycle,
    WorkerStatus,
)
from .store import Store

_log = logging.getLogger(__name__)


@dataclass
class TemporaryWorkerSpec:
    name: str
    organization_id: str
    role_id: Optional[str]
    parent_worker_id: str
    depth: int
    team_id: Optional[str] = None


class WorkerRegistry:
    """Owns the worker arena. Temporary workers are capped per organization."""

    def __init__(self, store: Store, max_temporary_workers: int = 10):
        self.store = store
        self.max_temporary_workers = max_temporary_workers
        self._spawn_lock = threading.Lock()

    def find_by_id(self, worker_id: str) -> Optional[Worker]:
        return self.store.get_worker(worker_id)

    def require(self, worker_id: str) -> Worker:
        worker = self.store.get_worker(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        return worker

    def update_status(self, worker_id: str, status: WorkerStatus) -> Worker:
        return self.store.update_worker(worker_id, status=status)

    def temporary_count(self, organization_id: str) -> int:
        return len(self.store.list_workers(organization_id, lifecycle=WorkerLifecycle.TEMPORARY))

    def has_capacity(self, organization_id: str) -> bool:
        return self.temporary_count(organization_id) < self.max_temporary_workers

    def create_temporary(self, spec: TemporaryWorkerSpec) -> Worker:
        with self._spawn_lock:
            if not self.has_capacity(spec.organization_id):
                raise SpawnLimitReachedError(spec.organization_id, self.max_temporary_workers)
            worker = Worker(
                name=spec.name,
                organization_id=spec.organization_id,
                team_id=spec.team_id,
                role_id=spec.role_id,
                lifecycle=WorkerLifecycle.TEMPORARY,
                parent_worker_id=spec.parent_worker_id,
                depth=spec.depth,
            )
            self.store.add_worker(worker)
        _log.info("Spawned temporary worker %s (%s) under %s",
                  worker.name, worker.id, spec.parent_worker_id)
        return worker

    def delete(self, worker_id: str) -> None:
        """Remove a worker and hand its unfinished tasks back to the pool."""
        worker = self.store.remove_worker(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        for task in self.store.list_tasks(
            worker.organization_id,
            where=lambda t: t.assigned_worker_id == worker_id and not t.is_terminal,
        ):
            status = TaskStatus.READY if task.status is TaskStatus.IN_PROGRESS else task.status
            self.store.update_task(task.id, assigned_worker_id=None, status=status)
        _log.info("Removed worker %s (%s)", worker.name, worker.id)

    def destroy_temporary(self, worker_id: Optional[str]) -> bool:
        """Best-effort teardown of a temporary worker. Errors are logged, never raised."""
        if not worker_id:
            return False
        try:
            worker = self.store.get_worker(worker_id)
            if worker is None or not worker.is_temporary:
                return False
            self.delete(worker_id)
            return True
        except Exception as e:
            _log.error("Cleanup of temporary worker %s failed: %s", worker_id, e)
            return False
