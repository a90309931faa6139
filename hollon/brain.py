"""Brain port: the external reasoning engine, plus its litellm adapter."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import litellm

from .errors import BrainExecutionError, BrainTimeoutError
from .models import CostRecord

litellm.suppress_debug_info = True

_log = logging.getLogger(__name__)

READ_ONLY_NOTICE = (
    "\n\n## Mode: READ-ONLY\n"
    "You cannot modify files or execute commands in this step. "
    "Reason about the request and answer in the format asked for."
)


@dataclass
class BrainRequest:
    prompt: str
    system_prompt: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    allow_tools: bool = True


@dataclass
class BrainUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class BrainResponse:
    output: str
    usage: BrainUsage = field(default_factory=BrainUsage)
    cost: float = 0.0       # USD
    duration: float = 0.0   # seconds


class Brain(ABC):
    """Executes one prompt. Implementations raise BrainExecutionError on failure."""

    @abstractmethod
    def execute(self, request: BrainRequest) -> BrainResponse:
        ...


def call_with_timeout(brain: Brain, request: BrainRequest, timeout: float) -> BrainResponse:
    """Run ``brain.execute`` on a daemon thread and give up after ``timeout`` seconds.

    The abandoned call is not cancelled; its eventual result is discarded.
    """
    outcome: Dict[str, Any] = {}

    def _target():
        try:
            outcome["response"] = brain.execute(request)
        except Exception as e:
            outcome["error"] = e

    t = threading.Thread(target=_target, name="brain-call", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        raise BrainTimeoutError(timeout)
    if "error" in outcome:
        err = outcome["error"]
        if isinstance(err, BrainExecutionError):
            raise err
        raise BrainExecutionError(f"{type(err).__name__}: {err}") from err
    return outcome["response"]


class LiteLLMBrain(Brain):
    """Brain backed by ``litellm.completion``. Passes api_key/api_base directly."""

    def __init__(self, model: str, temperature: float = 0.0,
                 max_tokens: int = 4096, api_base: Optional[str] = None,
                 api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_preset(cls, preset, timeout: Optional[float] = None) -> "LiteLLMBrain":
        return cls(timeout=timeout, **preset.get_llm_kwargs())

    def _messages(self, request: BrainRequest):
        system = request.system_prompt or "You are a member of an autonomous engineering team."
        if not request.allow_tools:
            system += READ_ONLY_NOTICE
        user = request.prompt
        if request.context:
            lines = [f"- {k}: {v}" for k, v in request.context.items()]
            user += "\n\n## Context\n" + "\n".join(lines)
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    def execute(self, request: BrainRequest) -> BrainResponse:
        kwargs: Dict[str, Any] = {
            "model": self.model, "messages": self._messages(request),
            "temperature": self.temperature, "max_tokens": self.max_tokens,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.timeout:
            kwargs["timeout"] = self.timeout

        t0 = time.perf_counter()
        try:
            response = litellm.completion(**kwargs)
        except litellm.exceptions.Timeout:
            raise BrainTimeoutError(self.timeout or 0)
        except litellm.exceptions.AuthenticationError as e:
            raise BrainExecutionError(f"Auth failed. Check API key.\n{e}")
        except litellm.exceptions.APIConnectionError as e:
            raise BrainExecutionError(
                f"Cannot connect: model={self.model}, base={self.api_base or 'default'}\n{e}"
            )
        except Exception as e:
            raise BrainExecutionError(f"{type(e).__name__}: {e}")
        duration = time.perf_counter() - t0

        content = response.choices[0].message.content or ""
        usage = BrainUsage()
        if response.usage:
            usage = BrainUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        try:
            cost = float(litellm.completion_cost(completion_response=response) or 0.0)
        except Exception as e:
            # Unknown or self-hosted models have no pricing entry.
            _log.info("No cost data for %s: %s", self.model, e)
            cost = 0.0
        return BrainResponse(output=content, usage=usage, cost=cost, duration=duration)


class MeteredBrain:
    """Applies the call timeout and books each call's cost to the organization ledger."""

    def __init__(self, brain: Brain, store, timeout: float = 600.0):
        self.brain = brain
        self.store = store
        self.timeout = timeout

    def ask(self, kind: str, worker, task, prompt: str, system_prompt: str = "",
            allow_tools: bool = False, record: bool = True) -> BrainResponse:
        request = BrainRequest(
            prompt=prompt, system_prompt=system_prompt, allow_tools=allow_tools,
            context={"task_id": task.id, "worker": worker.name, "kind": kind},
        )
        response = call_with_timeout(self.brain, request, self.timeout)
        _log.info("Brain %s call for task %s: %d tokens, $%.4f in %.1fs",
                  kind, task.id, response.usage.total_tokens, response.cost, response.duration)
        if record:
            self.record(kind, worker, task, response)
        return response

    def record(self, kind: str, worker, task, response: BrainResponse) -> None:
        self.store.record_cost(CostRecord(
            organization_id=task.organization_id, kind=kind, cost=response.cost,
            worker_id=worker.id, task_id=task.id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        ))
