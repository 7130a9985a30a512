"""Custom exceptions for the leadflow task pipeline."""


class LeadflowError(Exception):
    """Base exception for leadflow errors."""

    pass


class TaskValidationError(LeadflowError):
    """Raised when task parameters are malformed. Never retried."""

    pass


class CollaboratorError(LeadflowError):
    """Raised when an external provider (LLM, search, enrichment) fails."""

    pass


class LLMProviderError(CollaboratorError):
    """Raised when LLM provider configuration is invalid or the call fails."""

    pass


class StageTimeoutError(CollaboratorError):
    """Raised when a query, fan-out or stage exceeds its time limit."""

    pass


class StoreError(LeadflowError):
    """Raised when the task store cannot read or persist a task."""

    pass


class StaleRunningError(LeadflowError):
    """A running task stopped reporting progress and was reclaimed by the watchdog."""

    def __init__(self, task_id: str, idle_minutes: float):
        self.task_id = task_id
        self.idle_minutes = idle_minutes
        super().__init__(f"Task {task_id} made no progress for {idle_minutes:.1f} minutes")


class TaskCancelledError(LeadflowError):
    """Raised at a stage boundary once cancellation of the task is observed."""

    pass


class TaskClaimError(LeadflowError):
    """Raised when a pending task could not be moved to running."""

    pass
