"""Structured logging for task executions.

Every log line emitted while a task executes carries ``task_id``,
``task_type`` and ``attempt``. The context lives in structlog's contextvars,
so each asyncio task sees only the binding of its own execution.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Literal

import structlog

LogFormat = Literal["json", "console"]

TASK_CONTEXT_KEYS = ("task_id", "task_type", "attempt")

_configured = False


def setup_structured_logging(level: str = "INFO", log_format: LogFormat = "json") -> None:
    """Configure structlog once per process.

    ``json`` suits servers whose logs are collected; ``console`` renders
    readable lines for the interactive worker.
    """
    global _configured
    if _configured:
        return

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper()))
    _configured = True


@contextmanager
def task_context(task_id: str, task_type: str, attempt: int = 1) -> Iterator[None]:
    """Bind the execution's identity for the duration of the block."""
    with structlog.contextvars.bound_contextvars(task_id=task_id, task_type=task_type, attempt=attempt):
        yield


def current_task_context() -> dict[str, Any]:
    """The task identity bound in this async context, empty outside an execution."""
    bound = structlog.contextvars.get_contextvars()
    return {key: bound[key] for key in TASK_CONTEXT_KEYS if key in bound}


def get_task_logger(name: str = "leadflow") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
