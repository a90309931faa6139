"""Load an organization snapshot (roles, teams, workers, tasks) from YAML."""

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional, Tuple, Union

import yaml

from .models import (
    Organization,
    Role,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
    Team,
    Worker,
    WorkerStatus,
)
from .store import Store


class SeedError(ValueError):
    pass


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            raise SeedError(f"Invalid date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_priority(value: Any) -> TaskPriority:
    text = str(value or "P3").strip().upper()
    for p in TaskPriority:
        if text in (p.value, p.name):
            return p
    raise SeedError(f"Unknown priority: {value!r}")


def _enum(enum_cls, value: Any, default):
    if value is None:
        return default
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise SeedError(f"Unknown {enum_cls.__name__}: {value!r}")


def load_seed(path: Union[str, Path], store: Optional[Store] = None) -> Tuple[Store, str]:
    """Populate ``store`` from the YAML file at ``path``; returns (store, organization id)."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return load_seed_data(data, store)


def load_seed_data(data: dict, store: Optional[Store] = None) -> Tuple[Store, str]:
    store = store or Store()
    org_data = data.get("organization") or {}
    if not org_data.get("name"):
        raise SeedError("organization.name is required")
    org = Organization(name=org_data["name"],
                       daily_cost_limit=org_data.get("daily-cost-limit"))
    if org_data.get("id"):
        org.id = str(org_data["id"])
    store.add_organization(org)

    for r in data.get("roles") or []:
        role = Role(
            name=r["name"], organization_id=org.id,
            capabilities=list(r.get("capabilities") or []),
            available_for_spawn=bool(r.get("available-for-spawn", False)),
            system_prompt=r.get("system-prompt", ""),
        )
        role.id = str(r.get("id", role.id))
        store.add_role(role)

    for t in data.get("teams") or []:
        team = Team(name=t["name"], organization_id=org.id,
                    leader_worker_id=t.get("leader"), parent_team_id=t.get("parent"))
        team.id = str(t.get("id", team.id))
        store.add_team(team)

    for w in data.get("workers") or []:
        worker = Worker(
            name=w["name"], organization_id=org.id, team_id=w.get("team"),
            role_id=w.get("role"),
            status=_enum(WorkerStatus, w.get("status"), WorkerStatus.IDLE),
        )
        worker.id = str(w.get("id", worker.id))
        store.add_worker(worker)

    for item in data.get("tasks") or []:
        task = Task(
            title=item["title"], organization_id=org.id,
            description=item.get("description", ""),
            project_id=item.get("project"),
            team_id=item.get("team"),
            type=_enum(TaskType, item.get("type"), TaskType.IMPLEMENTATION),
            status=_enum(TaskStatus, item.get("status"), TaskStatus.READY),
            priority=_parse_priority(item.get("priority")),
            parent_task_id=item.get("parent"),
            assigned_worker_id=item.get("assigned-to"),
            dependencies=[str(d) for d in item.get("dependencies") or []],
            estimated_complexity=item.get("estimated-complexity", "low"),
            story_points=item.get("story-points"),
            required_skills=list(item.get("required-skills") or []),
            affected_files=list(item.get("affected-files") or []),
            tags=list(item.get("tags") or []),
            due_date=_parse_datetime(item.get("due-date")),
        )
        task.id = str(item.get("id", task.id))
        store.add_task(task)

    # A task seeded READY with open dependencies would be claimable too early.
    for task in store.list_tasks(org.id, where=lambda t: t.status is TaskStatus.READY):
        if store.unresolved_dependencies(task):
            store.update_task(task.id, status=TaskStatus.BLOCKED)
    return store, org.id
