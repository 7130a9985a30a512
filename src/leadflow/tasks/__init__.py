"""Task records, the durable task store and recovery of failed or orphaned tasks."""

from .models import (
    ALLOWED_TRANSITIONS,
    STAGE_PROGRESS,
    STAGE_TOTALS,
    TERMINAL_STATUSES,
    LeadResult,
    TaskParams,
    TaskRecord,
    TaskStage,
    TaskStatus,
    TaskType,
    can_transition,
)
from .store import TaskStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "STAGE_PROGRESS",
    "STAGE_TOTALS",
    "TERMINAL_STATUSES",
    "LeadResult",
    "TaskParams",
    "TaskRecord",
    "TaskStage",
    "TaskStatus",
    "TaskType",
    "TaskStore",
    "can_transition",
]
