"""Tests for structured logging task context."""

import asyncio

import pytest
import structlog

from leadflow.observability import current_task_context, task_context
from leadflow.tasks.models import TaskStatus
from leadflow.worker import TaskPoller


@pytest.mark.anyio
async def test_task_logging_context_isolation():
    """Each async task should see only its own bound task_id."""

    async def worker(task_id: str) -> None:
        with task_context(task_id, "search-and-enrich", attempt=2):
            await asyncio.sleep(0)
            assert current_task_context() == {"task_id": task_id, "task_type": "search-and-enrich", "attempt": 2}
        await asyncio.sleep(0)
        assert current_task_context() == {}

    await asyncio.gather(worker("t1"), worker("t2"))


@pytest.mark.anyio
async def test_context_does_not_leak_into_parent():
    async def worker() -> None:
        with task_context("child", "url-enrich"):
            await asyncio.sleep(0)

    await asyncio.create_task(worker())

    assert current_task_context() == {}
    assert "task_id" not in structlog.contextvars.get_contextvars()


def test_context_keeps_unrelated_bindings():
    structlog.contextvars.bind_contextvars(request_id="r1")
    try:
        with task_context("t1", "url-enrich"):
            assert structlog.contextvars.get_contextvars()["request_id"] == "r1"
        assert structlog.contextvars.get_contextvars() == {"request_id": "r1"}
    finally:
        structlog.contextvars.clear_contextvars()


@pytest.mark.anyio
async def test_poller_binds_context_for_the_execution(store):
    seen: list[dict] = []

    class RecordingRunner:
        async def run(self, task, cancel_event=None):
            seen.append(current_task_context())
            await store.mark_running(task.task_id)
            await store.mark_completed(task.task_id, [], {})
            return TaskStatus.COMPLETED

    task = await store.create_task("u", "t", params={"query": "q"})
    poller = TaskPoller(store, RecordingRunner(), max_concurrent=1)

    await poller.poll_once()
    await poller.stop()

    assert seen == [{"task_id": task.task_id, "task_type": "search-and-enrich", "attempt": 1}]
    assert current_task_context() == {}
