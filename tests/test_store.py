"""Tests for the SQLite task store and its guarded status transitions."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from leadflow.exceptions import StoreError, TaskValidationError
from leadflow.tasks.models import (
    ALLOWED_TRANSITIONS,
    LeadResult,
    TaskParams,
    TaskRecord,
    TaskStage,
    TaskStatus,
    TaskType,
    can_transition,
)


@pytest.mark.anyio
async def test_create_task_persists_pending_record(store):
    task = await store.create_task("user-1", "Dubai yoga", TaskType.SEARCH_AND_ENRICH, {"query": " yoga studios Dubai ", "result_count": 5})

    loaded = await store.get_task(task.task_id)
    assert loaded is not None
    assert loaded.status == TaskStatus.PENDING
    assert loaded.current_stage == TaskStage.INITIALIZING
    assert loaded.input_params.query == "yoga studios Dubai"
    assert loaded.input_params.result_count == 5
    assert loaded.progress_total == 7
    assert loaded.retry_count == 0


@pytest.mark.anyio
async def test_create_url_task_has_three_step_total(store):
    task = await store.create_task("user-1", "Site", "url-enrich", {"url": "https://example.com"})
    assert task.task_type == TaskType.URL_ENRICH
    assert task.progress_total == 3


@pytest.mark.anyio
@pytest.mark.parametrize(
    "task_type,params",
    [
        (TaskType.SEARCH_AND_ENRICH, {}),
        (TaskType.SEARCH_AND_ENRICH, {"query": "   "}),
        (TaskType.URL_ENRICH, {"query": "no url"}),
        (TaskType.SEARCH_AND_ENRICH, {"query": "cafes", "result_count": 0}),
        (TaskType.SEARCH_AND_ENRICH, {"query": "cafes", "result_count": 501}),
        ("unknown-type", {"query": "cafes"}),
    ],
)
async def test_create_task_rejects_invalid_input(store, task_type, params):
    with pytest.raises(TaskValidationError):
        await store.create_task("user-1", "bad", task_type, params)


@pytest.mark.anyio
async def test_get_missing_task_returns_none(store):
    assert await store.get_task("does-not-exist") is None


@pytest.mark.anyio
async def test_list_pending_is_oldest_first(store):
    base = datetime.now(UTC) - timedelta(minutes=10)
    for i, task_id in enumerate(["c", "a", "b"]):
        await store.add_task(
            TaskRecord(
                task_id=task_id,
                owner_id="u",
                name=task_id,
                input_params=TaskParams(query="q"),
                created_at=base + timedelta(seconds=i),
            )
        )

    pending = await store.list_pending(limit=10)
    assert [t.task_id for t in pending] == ["c", "a", "b"]

    limited = await store.list_pending(limit=2)
    assert [t.task_id for t in limited] == ["c", "a"]


@pytest.mark.anyio
async def test_mark_running_claims_only_once(store):
    task = await store.create_task("u", "t", params={"query": "q"})

    first, second = await asyncio.gather(store.mark_running(task.task_id), store.mark_running(task.task_id))

    claimed = [r for r in (first, second) if r is not None]
    assert len(claimed) == 1
    assert claimed[0].status == TaskStatus.RUNNING
    assert claimed[0].started_at is not None


@pytest.mark.anyio
async def test_update_progress_refreshes_updated_at(store):
    task = await store.create_task("u", "t", params={"query": "q"})
    await store.mark_running(task.task_id)

    await store.update_progress(task.task_id, TaskStage.AGGREGATION, 3, 7, "Deduplicating 12 candidates")

    loaded = await store.get_task(task.task_id)
    assert loaded.current_stage == TaskStage.AGGREGATION
    assert loaded.progress_current == 3
    assert loaded.progress_message == "Deduplicating 12 candidates"
    assert loaded.updated_at > task.updated_at


@pytest.mark.anyio
async def test_mark_completed_persists_results_and_summary(store):
    task = await store.create_task("u", "t", params={"query": "q"})
    await store.mark_running(task.task_id)
    results = [LeadResult(name="Studio", website="https://studio.ae", email="hi@studio.ae", relevance_score=30)]

    completed = await store.mark_completed(task.task_id, results, {"final_count": 1})

    assert completed is not None
    assert completed.status == TaskStatus.COMPLETED
    assert completed.current_stage == TaskStage.COMPLETE
    assert completed.progress_current == completed.progress_total == 7
    assert completed.final_results[0].email == "hi@studio.ae"
    assert completed.final_results[0].relevance_score == 30
    assert completed.summary == {"final_count": 1}
    assert completed.completed_at is not None


@pytest.mark.anyio
async def test_completion_cannot_overwrite_cancel(store):
    task = await store.create_task("u", "t", params={"query": "q"})
    await store.mark_running(task.task_id)
    await store.cancel_task(task.task_id)

    assert await store.mark_completed(task.task_id, [], {}) is None
    assert await store.mark_failed(task.task_id, "late failure") is None
    assert await store.schedule_retry(task.task_id, 1, "late retry") is None

    loaded = await store.get_task(task.task_id)
    assert loaded.status == TaskStatus.CANCELLED


@pytest.mark.anyio
async def test_terminal_tasks_cannot_be_cancelled(store):
    task = await store.create_task("u", "t", params={"query": "q"})
    await store.mark_running(task.task_id)
    await store.mark_failed(task.task_id, "boom")

    assert await store.cancel_task(task.task_id) is None
    assert (await store.get_task(task.task_id)).status == TaskStatus.FAILED


@pytest.mark.anyio
async def test_schedule_retry_requires_running(store):
    task = await store.create_task("u", "t", params={"query": "q"})
    assert await store.schedule_retry(task.task_id, 1, "Attempt 1: boom") is None

    await store.mark_running(task.task_id)
    retried = await store.schedule_retry(task.task_id, 1, "Attempt 1: boom")

    assert retried.status == TaskStatus.PENDING
    assert retried.current_stage == TaskStage.RETRY
    assert retried.retry_count == 1
    assert retried.error_message == "Attempt 1: boom"


@pytest.mark.anyio
async def test_mark_failed_truncates_long_messages(store):
    task = await store.create_task("u", "t", params={"query": "q"})
    await store.mark_running(task.task_id)

    failed = await store.mark_failed(task.task_id, "x" * 5000)
    assert len(failed.error_message) == 2000


@pytest.mark.anyio
async def test_stuck_running_and_reset_stale(store):
    task = await store.create_task("u", "t", params={"query": "q"})
    await store.mark_running(task.task_id)

    assert await store.list_stuck_running(timeout_minutes=5) == []

    later = datetime.now(UTC) + timedelta(minutes=10)
    stuck = await store.list_stuck_running(timeout_minutes=5, now=later)
    assert [t.task_id for t in stuck] == [task.task_id]

    reset = await store.reset_stale(task.task_id, "stale")
    assert reset.status == TaskStatus.PENDING
    assert reset.retry_count == 1
    assert reset.current_stage == TaskStage.RETRY

    # Only running tasks can be reset
    assert await store.reset_stale(task.task_id, "stale again") is None
    assert (await store.get_task(task.task_id)).retry_count == 1


@pytest.mark.anyio
async def test_update_task_rejects_unknown_fields_and_missing_rows(store):
    task = await store.create_task("u", "t", params={"query": "q"})

    with pytest.raises(StoreError):
        await store.update_task(task.task_id, not_a_column=1)
    with pytest.raises(StoreError):
        await store.update_task("missing", name="x")

    renamed = await store.update_task(task.task_id, name="renamed")
    assert renamed.name == "renamed"


@pytest.mark.anyio
async def test_owner_queries(store):
    a = await store.create_task("alice", "a", params={"query": "q"})
    b = await store.create_task("alice", "b", params={"query": "q"})
    await store.create_task("bob", "c", params={"query": "q"})
    await store.mark_running(b.task_id)
    await store.mark_failed(b.task_id, "boom")

    assert {t.task_id for t in await store.get_task_history(owner_id="alice")} == {a.task_id, b.task_id}
    assert [t.task_id for t in await store.get_active_tasks("alice")] == [a.task_id]
    assert len(await store.get_active_tasks()) == 2


@pytest.mark.anyio
async def test_get_stats_and_running_tasks(store):
    a = await store.create_task("u", "a", params={"query": "q"})
    b = await store.create_task("u", "b", params={"query": "q"})
    await store.create_task("u", "c", TaskType.URL_ENRICH, {"url": "https://example.com"})
    await store.mark_running(a.task_id)
    await store.mark_running(b.task_id)
    await store.mark_completed(b.task_id, [], {})

    running = await store.get_running_tasks()
    assert [t.task_id for t in running] == [a.task_id]

    stats = await store.get_stats()
    assert stats["total_tasks"] == 3
    assert stats["pending_count"] == 1
    assert stats["running_count"] == 1
    assert stats["by_type"] == {"search-and-enrich": 2, "url-enrich": 1}
    assert stats["success_rate_24h"] == 100.0


@pytest.mark.anyio
async def test_cleanup_old_tasks_keeps_active_and_recent(store):
    old = datetime.now(UTC) - timedelta(days=40)
    await store.add_task(TaskRecord(task_id="old-done", owner_id="u", name="n", status=TaskStatus.COMPLETED, created_at=old))
    await store.add_task(TaskRecord(task_id="old-pending", owner_id="u", name="n", status=TaskStatus.PENDING, created_at=old))
    recent = await store.create_task("u", "recent", params={"query": "q"})

    deleted = await store.cleanup_old_tasks(days=30)

    assert deleted == 1
    assert await store.get_task("old-done") is None
    assert await store.get_task("old-pending") is not None
    assert await store.get_task(recent.task_id) is not None


@pytest.mark.parametrize("current", list(TaskStatus))
@pytest.mark.parametrize("target", list(TaskStatus))
def test_transition_graph(current, target):
    expected = {
        TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
        TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.PENDING},
    }.get(current, set())
    assert can_transition(current, target) == (target in expected)
    assert (target in ALLOWED_TRANSITIONS[current]) == (target in expected)
