"""Tests for the Brain port, the timeout wrapper and the litellm adapter."""

import threading
from types import SimpleNamespace

import litellm
import pytest

from hollon.brain import (
    READ_ONLY_NOTICE,
    Brain,
    BrainRequest,
    BrainResponse,
    LiteLLMBrain,
    MeteredBrain,
    call_with_timeout,
)
from hollon.config import ModelPreset
from hollon.errors import BrainExecutionError, BrainTimeoutError

from conftest import ScriptedBrain


class _StuckBrain(Brain):
    def __init__(self):
        self.release = threading.Event()

    def execute(self, request):
        self.release.wait(5)
        return BrainResponse(output="too late")


def _completion(content="hello", prompt_tokens=12, completion_tokens=3):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


class TestCallWithTimeout:

    def test_returns_response(self):
        response = call_with_timeout(ScriptedBrain("ok"), BrainRequest("hi"), 5)
        assert response.output == "ok"

    def test_timeout(self):
        brain = _StuckBrain()
        with pytest.raises(BrainTimeoutError):
            call_with_timeout(brain, BrainRequest("hi"), 0.05)
        brain.release.set()

    def test_foreign_errors_are_wrapped(self):
        with pytest.raises(BrainExecutionError, match="KeyError"):
            call_with_timeout(ScriptedBrain(KeyError("model")), BrainRequest("hi"), 5)


class TestMeteredBrain:

    def test_records_cost(self, store, org, add_worker, add_task):
        worker = add_worker()
        task = add_task("x")
        metered = MeteredBrain(ScriptedBrain("ok", cost=0.25), store, timeout=5)

        response = metered.ask("review", worker, task, "prompt")

        assert response.output == "ok"
        [record] = store.cost_records(org.id)
        assert record.kind == "review"
        assert record.cost == 0.25
        assert record.task_id == task.id
        assert record.input_tokens == 10
        assert store.daily_cost(org.id) == 0.25

    def test_record_can_be_deferred(self, store, org, add_worker, add_task):
        metered = MeteredBrain(ScriptedBrain("ok"), store, timeout=5)
        metered.ask("execution", add_worker(), add_task("x"), "prompt", record=False)
        assert store.cost_records(org.id) == []


class TestLiteLLMBrain:

    def test_passes_settings_and_parses_usage(self, monkeypatch):
        calls = []

        def fake_completion(**kwargs):
            calls.append(kwargs)
            return _completion()

        monkeypatch.setattr(litellm, "completion", fake_completion)
        monkeypatch.setattr(litellm, "completion_cost", lambda completion_response: 0.002)

        brain = LiteLLMBrain("openai/model", api_base="http://localhost:8080/v1",
                             api_key="not-needed", timeout=30)
        response = brain.execute(BrainRequest("do it", system_prompt="You build things."))

        assert response.output == "hello"
        assert response.usage.total_tokens == 15
        assert response.cost == 0.002
        assert calls[0]["api_base"] == "http://localhost:8080/v1"
        assert calls[0]["timeout"] == 30
        assert calls[0]["messages"][0]["content"] == "You build things."

    def test_read_only_notice_and_context(self, monkeypatch):
        calls = []
        monkeypatch.setattr(litellm, "completion", lambda **kw: calls.append(kw) or _completion())
        monkeypatch.setattr(litellm, "completion_cost", lambda completion_response: 0.0)

        LiteLLMBrain("openai/model").execute(
            BrainRequest("review", allow_tools=False, context={"task_id": "t1"}))

        system, user = calls[0]["messages"]
        assert system["content"].endswith(READ_ONLY_NOTICE)
        assert "- task_id: t1" in user["content"]
        assert "api_key" not in calls[0]

    def test_unpriced_model_costs_nothing(self, monkeypatch):
        def no_price(completion_response):
            raise ValueError("model not mapped")

        monkeypatch.setattr(litellm, "completion", lambda **kw: _completion())
        monkeypatch.setattr(litellm, "completion_cost", no_price)
        assert LiteLLMBrain("openai/model").execute(BrainRequest("x")).cost == 0.0

    def test_errors_become_brain_errors(self, monkeypatch):
        def broken(**kwargs):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(litellm, "completion", broken)
        with pytest.raises(BrainExecutionError, match="socket closed"):
            LiteLLMBrain("openai/model").execute(BrainRequest("x"))

    def test_from_preset(self):
        preset = ModelPreset(name="local", provider="local", model="openai/model",
                             api_base="http://localhost:8080/v1", api_key="k",
                             temperature=0.2, max_tokens=1024)
        brain = LiteLLMBrain.from_preset(preset, timeout=12)
        assert (brain.model, brain.api_key, brain.max_tokens, brain.timeout) == \
            ("openai/model", "k", 1024, 12)
