"""Observability helpers: structured per-task logging."""

from .logging import current_task_context, get_task_logger, setup_structured_logging, task_context

__all__ = [
    "current_task_context",
    "get_task_logger",
    "setup_structured_logging",
    "task_context",
]
