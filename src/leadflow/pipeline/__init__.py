"""Search-and-enrich pipeline stages."""

from .events import CompletionEvent, EventLog, FailureEvent, NullObserver, PipelineObserver, QueueObserver, StageEvent
from .outcome import Fatal, PartialSuccess, StageFailure, StageOutcome, Success

__all__ = [
    "CompletionEvent",
    "EventLog",
    "FailureEvent",
    "Fatal",
    "NullObserver",
    "PartialSuccess",
    "PipelineObserver",
    "QueueObserver",
    "StageEvent",
    "StageFailure",
    "StageOutcome",
    "Success",
]
