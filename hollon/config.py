"""
Configuration: model presets plus orchestration limits.

Loading priority:
  1. Project dir .hollon.yml
  2. Git root .hollon.yml
  3. Global ~/.hollon/config.yml

Environment (.env files and HOLLON_* variables) overrides file values.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

CONFIG_DIR = Path.home() / ".hollon"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".hollon.yml"


def _coerce_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def _coerce_positive_int(value, default: int, min_value: int = 1, max_value: int = 100000) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if parsed < min_value:
        return min_value
    if parsed > max_value:
        return max_value
    return parsed


def _coerce_float(value, default: float, min_value: float = 0.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return max(parsed, min_value)


@dataclass
class ModelPreset:
    name: str
    provider: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 4096
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        env_map = {
            "openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY",
            "deepseek": "DEEPSEEK_API_KEY", "gemini": "GEMINI_API_KEY",
        }
        env_var = env_map.get(self.provider)
        return os.environ.get(env_var) if env_var else None

    def get_llm_kwargs(self) -> dict:
        """Return kwargs for LiteLLMBrain, passed directly instead of through env vars."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
        }

    @classmethod
    def from_dict(cls, name: str, m: dict) -> "ModelPreset":
        return cls(
            name=name, provider=m.get("provider", "openai"),
            model=m.get("model", "openai/gpt-4o-mini"),
            api_base=m.get("api-base"), api_key=m.get("api-key"),
            api_key_env=m.get("api-key-env"),
            temperature=m.get("temperature", 0.0),
            max_tokens=m.get("max-tokens", 4096),
            description=m.get("description", ""),
        )


@dataclass
class OrchestrationConfig:
    """Limits and timings for the orchestration core.

    Parsed from the ``orchestration:`` section of ``.hollon.yml``.
    """

    max_retries: int = 3
    brain_timeout: float = 600.0
    max_temporary_workers: int = 10
    max_subtasks_per_parent: int = 10
    max_review_count: int = 3
    review_capability: str = "review"
    deadline_window_hours: int = 24
    cycle_interval: float = 5.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "OrchestrationConfig":
        if not data:
            return cls()
        return cls(
            max_retries=_coerce_positive_int(data.get("max-retries", 3), default=3, min_value=0, max_value=20),
            brain_timeout=_coerce_float(data.get("brain-timeout", 600.0), default=600.0, min_value=1.0),
            max_temporary_workers=_coerce_positive_int(
                data.get("max-temporary-workers", 10), default=10, min_value=0
            ),
            max_subtasks_per_parent=_coerce_positive_int(
                data.get("max-subtasks-per-parent", 10), default=10, min_value=1, max_value=100
            ),
            max_review_count=_coerce_positive_int(data.get("max-review-count", 3), default=3),
            review_capability=str(data.get("review-capability", "review")),
            deadline_window_hours=_coerce_positive_int(
                data.get("deadline-window-hours", 24), default=24
            ),
            cycle_interval=_coerce_float(data.get("cycle-interval", 5.0), default=5.0),
        )


@dataclass
class Config:
    active_model: str = "local"
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    verbose: bool = False
    log_file: Any = None
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        git_root = cls._find_git_root(project_path)
        for candidate in [
            project_path / PROJECT_CONFIG_NAME,
            (git_root / PROJECT_CONFIG_NAME) if git_root and git_root != project_path else None,
            CONFIG_FILE,
        ]:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                break
        else:
            config.models = cls.get_default_presets()

        config._apply_env()
        config.project_root = str(project_path)
        return config

    @classmethod
    def get_default_presets(cls) -> Dict[str, ModelPreset]:
        return {
            "local": ModelPreset(
                name="local", provider="local", model="openai/model",
                api_base="http://localhost:8080/v1", api_key="not-needed",
                description="Local model (vLLM / llama.cpp on :8080)",
            ),
            "deepseek-chat": ModelPreset(
                name="deepseek-chat", provider="deepseek",
                model="deepseek/deepseek-chat",
                api_key_env="DEEPSEEK_API_KEY",
                description="DeepSeek chat",
            ),
        }

    def _load_yaml(self, filepath: Path):
        with open(filepath) as f:
            data = yaml.safe_load(f) or {}

        self.active_model = data.get("active-model", "local")
        self.verbose = _coerce_bool(data.get("verbose", False), default=False)
        self.log_file = data.get("log-file")
        self.orchestration = OrchestrationConfig.from_dict(data.get("orchestration"))

        self.models = {
            name: ModelPreset.from_dict(name, m or {})
            for name, m in (data.get("models") or {}).items()
        }
        if not self.models:
            self.models = self.get_default_presets()

    def _apply_env(self):
        env_map = {
            "HOLLON_MODEL": ("active_model", str),
            "HOLLON_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                setattr(self, attr, conv(val))
        timeout = os.environ.get("HOLLON_BRAIN_TIMEOUT")
        if timeout:
            self.orchestration.brain_timeout = _coerce_float(
                timeout, default=self.orchestration.brain_timeout, min_value=1.0
            )

    def get_active_preset(self) -> ModelPreset:
        if self.active_model not in self.models:
            raise ValueError(
                f"Model preset '{self.active_model}' not found. "
                f"Available: {', '.join(sorted(self.models))}"
            )
        return self.models[self.active_model]

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        current = path
        while current != current.parent:
            if (current / ".git").exists():
                return current
            current = current.parent
        return None
