"""Observer interface for pipeline progress, completion and failure."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from ..tasks.models import LeadResult, TaskStage


@dataclass(frozen=True)
class StageEvent:
    task_id: str
    stage: TaskStage
    current: int
    total: int
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class CompletionEvent:
    task_id: str
    results: list[LeadResult]
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class FailureEvent:
    task_id: str
    error: str
    will_retry: bool = False
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


PipelineEvent = StageEvent | CompletionEvent | FailureEvent


@runtime_checkable
class PipelineObserver(Protocol):
    """Receives notifications in the order the pipeline produces them."""

    async def on_stage(self, event: StageEvent) -> None: ...

    async def on_completed(self, event: CompletionEvent) -> None: ...

    async def on_failed(self, event: FailureEvent) -> None: ...


class NullObserver:
    async def on_stage(self, event: StageEvent) -> None:
        return None

    async def on_completed(self, event: CompletionEvent) -> None:
        return None

    async def on_failed(self, event: FailureEvent) -> None:
        return None


class EventLog:
    """Keeps every event in arrival order. Used by the CLI and by tests."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    async def on_stage(self, event: StageEvent) -> None:
        self.events.append(event)

    async def on_completed(self, event: CompletionEvent) -> None:
        self.events.append(event)

    async def on_failed(self, event: FailureEvent) -> None:
        self.events.append(event)

    def stages_for(self, task_id: str) -> list[TaskStage]:
        return [e.stage for e in self.events if isinstance(e, StageEvent) and e.task_id == task_id]


class QueueObserver:
    """Pushes events into an asyncio.Queue consumed by another coroutine."""

    def __init__(self, queue: "asyncio.Queue[PipelineEvent] | None" = None) -> None:
        self.queue: asyncio.Queue[PipelineEvent] = queue if queue is not None else asyncio.Queue()

    async def on_stage(self, event: StageEvent) -> None:
        await self.queue.put(event)

    async def on_completed(self, event: CompletionEvent) -> None:
        await self.queue.put(event)

    async def on_failed(self, event: FailureEvent) -> None:
        await self.queue.put(event)
