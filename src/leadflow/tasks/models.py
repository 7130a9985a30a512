"""Data models for data-collection tasks and their results."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskType(str, Enum):
    """Kind of job a user submitted."""

    SEARCH_AND_ENRICH = "search-and-enrich"
    URL_ENRICH = "url-enrich"


class TaskStage(str, Enum):
    """Pipeline stages, plus the bookkeeping stages written outside an attempt."""

    INITIALIZING = "initializing"
    QUERY_GENERATION = "query-generation"
    CANDIDATE_SEARCH = "candidate-search"
    AGGREGATION = "aggregation"
    DETAIL_ENRICHMENT = "detail-enrichment"
    CONTACT_FILTER = "contact-filter"
    RELEVANCE_RANK = "relevance-rank"
    COMPLETE = "complete"
    # Not part of an execution attempt
    RETRY = "retry"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Progress position of each stage, keyed by task type. The position doubles as
# the number of stages already completed when the stage begins.
STAGE_PROGRESS: dict[TaskType, dict[TaskStage, int]] = {
    TaskType.SEARCH_AND_ENRICH: {
        TaskStage.INITIALIZING: 0,
        TaskStage.QUERY_GENERATION: 1,
        TaskStage.CANDIDATE_SEARCH: 2,
        TaskStage.AGGREGATION: 3,
        TaskStage.DETAIL_ENRICHMENT: 4,
        TaskStage.CONTACT_FILTER: 5,
        TaskStage.RELEVANCE_RANK: 6,
        TaskStage.COMPLETE: 7,
    },
    TaskType.URL_ENRICH: {
        TaskStage.INITIALIZING: 0,
        TaskStage.DETAIL_ENRICHMENT: 1,
        TaskStage.COMPLETE: 3,
    },
}

STAGE_TOTALS: dict[TaskType, int] = {
    TaskType.SEARCH_AND_ENRICH: 7,
    TaskType.URL_ENRICH: 3,
}

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# running -> pending is only ever written as a retry (or a watchdog reclaim).
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Check whether the status graph permits moving from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


def allowed_sources(target: TaskStatus) -> list[TaskStatus]:
    """Statuses from which target can be reached, in enum order."""
    return [status for status in TaskStatus if target in ALLOWED_TRANSITIONS[status]]


class TaskParams(BaseModel):
    """User-supplied input of a task."""

    query: str | None = None
    url: str | None = None
    result_count: int = Field(default=10, ge=1, le=500)

    @field_validator("query", "url")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class LeadResult(BaseModel):
    """A candidate merged with its enrichment record, as stored in final results."""

    name: str
    website: str | None = None
    canonical_link: str | None = None
    address: str | None = None
    phone: str | None = None
    category: str | None = None
    rating: float | None = None
    reviews_count: int | None = None
    language: str | None = None
    region: str | None = None

    # Enrichment
    email: str | None = None
    all_emails: list[str] = Field(default_factory=list)
    description: str | None = None
    country: str | None = None
    data_source: str = "search_only"
    enrichment_error: str | None = None
    scraped_at: datetime | None = None

    relevance_score: int = 0

    @property
    def has_contact_info(self) -> bool:
        return bool(self.email or self.all_emails or self.phone)


class TaskRecord(BaseModel):
    """Durable record of a task and its progress."""

    task_id: str
    owner_id: str
    name: str
    task_type: TaskType = TaskType.SEARCH_AND_ENRICH
    status: TaskStatus = TaskStatus.PENDING
    current_stage: TaskStage = TaskStage.INITIALIZING

    # Timestamps
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Progress tracking
    progress_current: int = 0
    progress_total: int = 0
    progress_message: str | None = None

    # Input/Output
    input_params: TaskParams = Field(default_factory=TaskParams)
    retry_count: int = 0
    error_message: str | None = None
    final_results: list[LeadResult] = Field(default_factory=list)
    summary: dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> float | None:
        """Calculate task duration in seconds."""
        if not self.started_at:
            return None
        end = self.completed_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def is_terminal(self) -> bool:
        """Check if task is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> dict[str, Any]:
        return {
            "current": self.progress_current,
            "total": self.progress_total,
            "stage": self.current_stage.value,
            "message": self.progress_message,
        }

    def public_view(self) -> dict[str, Any]:
        """Shape exposed to monitoring clients."""
        return {
            "task_id": self.task_id,
            "name": self.name,
            "task_type": self.task_type.value,
            "status": self.status.value,
            "current_stage": self.current_stage.value,
            "progress": self.progress,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "final_results": [r.model_dump(mode="json") for r in self.final_results],
        }
