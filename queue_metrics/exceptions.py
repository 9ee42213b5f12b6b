"""
Queue metrics exceptions.

Infrastructure failures (store unreachable, timeouts, script errors) surface as
``StorageUnavailableError``; callers recording job telemetry wrap their calls in
``best_effort`` so metrics never decide a job's outcome.
"""
from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class QueueMetricsError(Exception):
    """Base error for the metrics engine."""


class StorageUnavailableError(QueueMetricsError):
    """The backing store could not be reached or rejected a command."""


class ScriptError(StorageUnavailableError):
    """An atomic server-side script failed."""

    def __init__(self, script_name: str, message: str) -> None:
        super().__init__(f"Script {script_name} failed: {message}")
        self.script_name = script_name


class ConfigurationError(QueueMetricsError):
    """Settings failed validation at startup."""


def best_effort(func: F) -> F:
    """
    Swallow metrics errors raised by a recorder.

    Used by lifecycle adapters: a storage outage is logged and the wrapped call
    returns None instead of failing the job being measured.
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Optional[Any]:
        try:
            return func(*args, **kwargs)
        except QueueMetricsError as exc:
            logger.warning("Metrics call %s skipped: %s", func.__name__, exc)
            return None

    return wrapper  # type: ignore[return-value]
