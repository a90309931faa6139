"""Shared fixtures for hollon tests."""

import threading
from collections import deque

import pytest

from hollon.brain import Brain, BrainResponse, BrainUsage
from hollon.codehost import InMemoryCodeHost
from hollon.config import OrchestrationConfig
from hollon.errors import BrainExecutionError
from hollon.messages import MessageBus
from hollon.models import Organization, Role, Task, Team, Worker
from hollon.orchestrator import Orchestrator
from hollon.store import Store

CODE_OUTPUT = "Implemented.\n\n```python\ndef handler():\n    return 'ok'\n```\n"
ANALYSIS_OUTPUT = "# Findings\n\nEverything checks out.\n"


class ScriptedBrain(Brain):
    """Brain fake that replays queued outputs; an Exception in the queue is raised."""

    def __init__(self, *outputs, cost: float = 0.0):
        self._outputs = deque(outputs)
        self._lock = threading.Lock()
        self.cost = cost
        self.requests = []

    def push(self, *outputs) -> None:
        with self._lock:
            self._outputs.extend(outputs)

    def execute(self, request):
        with self._lock:
            self.requests.append(request)
            if not self._outputs:
                raise BrainExecutionError("no scripted output left")
            item = self._outputs.popleft()
        if isinstance(item, Exception):
            raise item
        return BrainResponse(output=item, usage=BrainUsage(10, 20), cost=self.cost)


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def org(store):
    return store.add_organization(Organization(name="Acme"))


@pytest.fixture
def team(store, org):
    return store.add_team(Team(name="Core", organization_id=org.id))


@pytest.fixture
def roles(store, org):
    """developer and reviewer are spawnable; manager is not."""
    return {
        "developer": store.add_role(Role(
            name="Developer", organization_id=org.id,
            capabilities=["python", "backend"], available_for_spawn=True,
        )),
        "reviewer": store.add_role(Role(
            name="Reviewer", organization_id=org.id,
            capabilities=["review"], available_for_spawn=True,
        )),
        "manager": store.add_role(Role(
            name="Manager", organization_id=org.id, capabilities=["planning"],
        )),
    }


@pytest.fixture
def add_worker(store, org):
    def _add(name="dev", **kwargs):
        return store.add_worker(Worker(name=name, organization_id=org.id, **kwargs))
    return _add


@pytest.fixture
def add_task(store, org):
    def _add(title="Task", **kwargs):
        return store.add_task(Task(title=title, organization_id=org.id, **kwargs))
    return _add


@pytest.fixture
def brain():
    return ScriptedBrain()


@pytest.fixture
def bus():
    return MessageBus()


@pytest.fixture
def codehost():
    return InMemoryCodeHost()


@pytest.fixture
def settings():
    return OrchestrationConfig(brain_timeout=5.0)


@pytest.fixture
def orchestrator(store, brain, bus, settings):
    return Orchestrator(store, brain, settings=settings, notifier=bus)


@pytest.fixture
def reviewed_orchestrator(store, brain, bus, codehost, settings):
    """Orchestrator wired to an in-memory code host."""
    return Orchestrator(store, brain, settings=settings, codehost=codehost, notifier=bus)
