"""Decomposition: split a complex task into subtasks run by temporary workers."""

from enum import Enum
from typing import Dict, List, Optional

from .brain import MeteredBrain
from .decisions import SubtaskSpec, parse_decomposition
from .errors import DecompositionError, SpawnLimitReachedError
from .logger import get_logger
from .models import Role, Task, TaskStatus, Worker, new_id
from .prompts import build_system_prompt, decomposition_prompt
from .store import Store
from .workers import TemporaryWorkerSpec, WorkerRegistry

_log = get_logger(__name__)


class DecompositionOutcome(Enum):
    DELEGATED = "delegated"
    WAITING_FOR_WORKER = "waiting_for_worker"
    FALLBACK = "fallback"   # caller executes the task directly


class Decomposer:
    def __init__(self, store: Store, registry: WorkerRegistry, brain: MeteredBrain,
                 max_subtasks_per_parent: int = 10):
        self.store = store
        self.registry = registry
        self.brain = brain
        self.max_subtasks_per_parent = max_subtasks_per_parent

    def decompose(self, worker: Worker, task: Task) -> DecompositionOutcome:
        roles = self.store.list_roles(worker.organization_id, spawnable=True)
        if not roles:
            _log.info("No spawnable roles in %s; executing task %s directly",
                      worker.organization_id, task.id)
            return DecompositionOutcome.FALLBACK

        try:
            response = self.brain.ask(
                "decomposition", worker, task,
                decomposition_prompt(task, roles, self.max_subtasks_per_parent),
                build_system_prompt(self.store.get_role(worker.role_id)),
            )
            decision = parse_decomposition(response.output)
            if len(decision.subtasks) > self.max_subtasks_per_parent:
                raise DecompositionError(
                    f"{len(decision.subtasks)} subtasks exceeds the limit of "
                    f"{self.max_subtasks_per_parent}"
                )
            created = self.create_subtasks(worker, task, decision.subtasks, roles)
        except SpawnLimitReachedError as e:
            _log.warning("Task %s parked: %s", task.id, e)
            self.store.update_task(task.id, status=TaskStatus.WAITING_FOR_WORKER)
            return DecompositionOutcome.WAITING_FOR_WORKER
        except Exception as e:
            _log.warning("Decomposition of task %s failed, executing directly: %s", task.id, e)
            return DecompositionOutcome.FALLBACK

        if not created:
            _log.warning("Decomposition of task %s produced no subtasks", task.id)
            return DecompositionOutcome.FALLBACK

        self.store.update_task(task.id, status=TaskStatus.IN_PROGRESS)
        _log.info("Task %s delegated to %d subtasks", task.id, len(created))
        return DecompositionOutcome.DELEGATED

    def create_subtasks(self, worker: Worker, parent: Task, specs: List[SubtaskSpec],
                        roles: Optional[List[Role]] = None) -> List[Task]:
        """Spawn one temporary worker per planned subtask and persist the subtasks in order.

        Dependencies name earlier subtasks by title; a title not seen yet counts
        as satisfied. On any failure, everything created here is rolled back
        and the error is re-raised.
        """
        if roles is None:
            roles = self.store.list_roles(worker.organization_id, spawnable=True)
        by_title: Dict[str, Task] = {
            child.title: child for child in self.store.children(parent.id)
            if child.status is not TaskStatus.CANCELLED
        }
        spawned: List[Worker] = []
        created: List[Task] = []
        try:
            for spec in specs:
                role = self._resolve_role(spec, worker, roles)
                if role is None:
                    _log.error("No role available for subtask '%s'; skipped", spec.title)
                    continue
                sub_worker = self.registry.create_temporary(TemporaryWorkerSpec(
                    name=f"{role.name}-{new_id()[:6]}",
                    organization_id=worker.organization_id,
                    team_id=worker.team_id,
                    role_id=role.id,
                    parent_worker_id=worker.id,
                    depth=worker.depth + 1,
                ))
                spawned.append(sub_worker)

                dep_ids = [by_title[t].id for t in spec.dependencies if t in by_title]
                subtask = Task(
                    title=spec.title,
                    description=spec.description,
                    organization_id=parent.organization_id,
                    project_id=parent.project_id,
                    team_id=parent.team_id,
                    type=spec.type,
                    priority=spec.priority,
                    parent_task_id=parent.id,
                    assigned_worker_id=sub_worker.id,
                    creator_worker_id=worker.id,
                    reviewer_worker_id=worker.id,
                    dependencies=dep_ids,
                    depth=parent.depth + 1,
                    affected_files=list(spec.affected_files),
                )
                subtask.status = (
                    TaskStatus.BLOCKED if self.store.unresolved_dependencies(subtask)
                    else TaskStatus.READY
                )
                self.store.add_task(subtask)
                created.append(subtask)
                by_title[subtask.title] = subtask
        except Exception:
            self._rollback(spawned, created)
            raise
        return created

    def restaff(self, worker: Worker, subtask: Task) -> str:
        """Spawn a fresh temporary worker for ``subtask``; at the spawn limit ``worker`` takes it."""
        roles = self.store.list_roles(worker.organization_id, spawnable=True)
        role = self.store.get_role(worker.role_id) or (roles[0] if roles else None)
        try:
            sub_worker = self.registry.create_temporary(TemporaryWorkerSpec(
                name=f"{role.name if role else 'worker'}-{new_id()[:6]}",
                organization_id=worker.organization_id,
                team_id=worker.team_id,
                role_id=role.id if role else None,
                parent_worker_id=worker.id,
                depth=worker.depth + 1,
            ))
        except SpawnLimitReachedError as e:
            _log.warning("Subtask %s handed back to %s: %s", subtask.id, worker.name, e)
            return worker.id
        return sub_worker.id

    def _resolve_role(self, spec: SubtaskSpec, worker: Worker, roles: List[Role]) -> Optional[Role]:
        """Requested role → the parent worker's own role → first spawnable role."""
        if spec.role_id:
            for role in roles:
                if spec.role_id in (role.id, role.name):
                    return role
        own = self.store.get_role(worker.role_id)
        if own is not None:
            return own
        return roles[0] if roles else None

    def _rollback(self, spawned: List[Worker], created: List[Task]) -> None:
        for task in created:
            try:
                self.store.update_task(task.id, status=TaskStatus.CANCELLED,
                                       assigned_worker_id=None)
            except Exception as e:
                _log.error("Could not cancel subtask %s: %s", task.id, e)
        for sub_worker in spawned:
            self.registry.destroy_temporary(sub_worker.id)
