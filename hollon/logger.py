"""Logging helpers for hollon.

``setup_logger`` configures the ``hollon`` package logger once, at the CLI
entry point. Modules fetch their own logger with ``get_logger(__name__)``;
code that acts on behalf of a worker wraps it with ``for_worker`` so every
line names the worker (and task) it belongs to.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__all__ = ["setup_logger", "get_logger", "for_worker", "WorkerLogAdapter"]

DEFAULT_LOG_FILE = Path("~/.hollon/logs/hollon.log").expanduser()
CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024  # 5MB
LOG_BACKUP_COUNT = 3

# Chatty below WARNING; Brain calls go through litellm and its HTTP stack.
THIRD_PARTY_LOGGERS = ("litellm", "LiteLLM", "httpx", "httpcore")


class WorkerLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with ``[worker]`` or ``[worker/task]``."""

    def process(self, msg, kwargs):
        tag = self.extra["worker"]
        if self.extra.get("task"):
            tag = f"{tag}/{self.extra['task']}"
        return f"[{tag}] {msg}", kwargs

    def with_task(self, task_id: Optional[str]) -> "WorkerLogAdapter":
        return WorkerLogAdapter(self.logger, {"worker": self.extra["worker"], "task": task_id})


def setup_logger(
    name: str = "hollon",
    verbose: bool = False,
    log_file: Union[str, Path, bool, None] = None,
) -> logging.Logger:
    """Configure and return the package logger.

    Args:
        name: Logger name. Configuring ``"hollon"`` covers every module logger.
        verbose: ``True`` enables INFO logs; ``False`` keeps output at WARNING+.
        log_file: File logging target.
            - ``None`` or ``True``: use ``~/.hollon/logs/hollon.log``
            - ``False``: disable file logging
            - ``str``/``Path``: use a custom log file path
    """
    logger = logging.getLogger(name)
    level = logging.INFO if verbose else logging.WARNING

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(_handler(logging.StreamHandler(), level, CONSOLE_FORMAT))

    log_path = _resolve_log_path(log_file)
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8",
        )
        logger.addHandler(_handler(rotating, level, FILE_FORMAT))

    for noisy in THIRD_PARTY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name without changing its configuration."""
    return logging.getLogger(name)


def for_worker(logger: logging.Logger, worker_name: str,
               task_id: Optional[str] = None) -> WorkerLogAdapter:
    return WorkerLogAdapter(logger, {"worker": worker_name, "task": task_id})


def _handler(handler: logging.Handler, level: int, fmt: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def _resolve_log_path(log_file: Union[str, Path, bool, None]) -> Path | None:
    if log_file is False:
        return None
    if log_file is None or log_file is True:
        return DEFAULT_LOG_FILE
    return Path(log_file).expanduser()
