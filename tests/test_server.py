"""Tests for MCP server tools using FastMCP in-memory testing."""

import asyncio
import json
from collections.abc import AsyncGenerator

import pytest
from fastmcp import Client

from leadflow.config import AppSettings, PipelineSettings, WorkerSettings
from leadflow.server import serve
from leadflow.tasks.models import TaskStatus
from leadflow.worker import TaskPoller, build_worker


class IdleRunner:
    async def run(self, task, cancel_event=None):
        return None


def _payload(result) -> dict:
    return json.loads(result.content[0].text)


@pytest.fixture
def poller(store) -> TaskPoller:
    return TaskPoller(store, IdleRunner(), max_concurrent=2)


@pytest.fixture
async def client(store, poller) -> AsyncGenerator[Client, None]:
    """In-memory client against a server whose worker is not started."""
    app = serve(store=store, poller=poller, start_worker=False)
    async with Client(app) as client:
        yield client


class TestListTools:
    @pytest.mark.anyio
    async def test_list_tools(self, client: Client):
        tools = await client.list_tools()
        assert sorted(tool.name for tool in tools) == ["health_check", "task_cancel", "task_create", "task_get", "task_list"]

    @pytest.mark.anyio
    async def test_task_create_schema(self, client: Client):
        tools = await client.list_tools()
        tool = next(t for t in tools if t.name == "task_create")

        assert tool.description is not None
        assert "query" in str(tool.inputSchema)
        assert "url" in str(tool.inputSchema)


class TestTaskCreate:
    @pytest.mark.anyio
    async def test_search_task(self, client: Client, store):
        data = _payload(await client.call_tool("task_create", {"name": "Yoga Dubai", "query": "yoga studios Dubai", "result_count": 5}))

        assert data["success"] is True
        assert data["task_type"] == "search-and-enrich"
        assert data["status"] == "pending"
        stored = await store.get_task(data["task_id"])
        assert stored.input_params.result_count == 5
        assert stored.owner_id == "default"

    @pytest.mark.anyio
    async def test_url_task_when_no_query(self, client: Client):
        data = _payload(await client.call_tool("task_create", {"name": "Studio", "url": "https://studio.ae"}))

        assert data["success"] is True
        assert data["task_type"] == "url-enrich"

    @pytest.mark.anyio
    async def test_invalid_input_is_reported(self, client: Client):
        data = _payload(await client.call_tool("task_create", {"name": "Nothing"}))

        assert data["success"] is False
        assert data["error"]


class TestTaskQueries:
    @pytest.mark.anyio
    async def test_task_get_by_prefix(self, client: Client, store):
        task = await store.create_task("alice", "Cafes", params={"query": "cafes Boston"})

        data = _payload(await client.call_tool("task_get", {"task_id": task.task_id[:8]}))

        assert data["task_id"] == task.task_id
        assert data["status"] == "pending"
        assert data["owner_id"] == "alice"
        assert data["input"]["query"] == "cafes Boston"
        assert data["progress"]["total"] == 7
        assert data["timestamps"]["started"] is None

    @pytest.mark.anyio
    async def test_task_get_missing(self, client: Client):
        data = _payload(await client.call_tool("task_get", {"task_id": "nope"}))
        assert data == {"success": False, "error": "Task 'nope' not found"}

    @pytest.mark.anyio
    async def test_task_list_filters(self, client: Client, store):
        first = await store.create_task("alice", "a", params={"query": "q"})
        await store.create_task("bob", "b", params={"query": "q"})
        await store.mark_running(first.task_id)

        running = _payload(await client.call_tool("task_list", {"status_filter": "running"}))
        assert [t["task_id"] for t in running["tasks"]] == [first.task_id]

        bobs = _payload(await client.call_tool("task_list", {"owner_id": "bob"}))
        assert bobs["count"] == 1

        invalid = _payload(await client.call_tool("task_list", {"status_filter": "sleeping"}))
        assert invalid["success"] is False
        assert "pending" in invalid["error"]

    @pytest.mark.anyio
    async def test_task_list_active_only(self, client: Client, store):
        waiting = await store.create_task("alice", "a", params={"query": "q"})
        done = await store.create_task("alice", "b", params={"query": "q"})
        other = await store.create_task("bob", "c", params={"query": "q"})
        await store.mark_running(done.task_id)
        await store.mark_completed(done.task_id, [], {})

        active = _payload(await client.call_tool("task_list", {"active_only": True}))
        assert {t["task_id"] for t in active["tasks"]} == {waiting.task_id, other.task_id}

        alices = _payload(await client.call_tool("task_list", {"active_only": True, "owner_id": "alice"}))
        assert [t["task_id"] for t in alices["tasks"]] == [waiting.task_id]

    @pytest.mark.anyio
    @pytest.mark.parametrize("task_id", ["", "   "])
    async def test_blank_id_matches_nothing(self, client: Client, store, task_id):
        task = await store.create_task("u", "t", params={"query": "q"})

        fetched = _payload(await client.call_tool("task_get", {"task_id": task_id}))
        cancelled = _payload(await client.call_tool("task_cancel", {"task_id": task_id}))

        assert fetched["success"] is False
        assert cancelled["success"] is False
        assert (await store.get_task(task.task_id)).status == TaskStatus.PENDING


class TestTaskCancel:
    @pytest.mark.anyio
    async def test_cancel_pending_task(self, client: Client, store):
        task = await store.create_task("u", "t", params={"query": "q"})

        data = _payload(await client.call_tool("task_cancel", {"task_id": task.task_id}))

        assert data["success"] is True
        assert data["was_running"] is False
        assert (await store.get_task(task.task_id)).status == TaskStatus.CANCELLED

    @pytest.mark.anyio
    async def test_cancel_locally_running_task_signals_it(self, client: Client, store, poller):
        task = await store.create_task("u", "t", params={"query": "q"})
        await store.mark_running(task.task_id)
        event = asyncio.Event()
        poller.running[task.task_id] = event

        data = _payload(await client.call_tool("task_cancel", {"task_id": task.task_id}))

        assert data["success"] is True
        assert data["was_running"] is True
        assert event.is_set()

    @pytest.mark.anyio
    async def test_cancel_finished_task_rejected(self, client: Client, store):
        task = await store.create_task("u", "t", params={"query": "q"})
        await store.mark_running(task.task_id)
        await store.mark_completed(task.task_id, [], {})

        data = _payload(await client.call_tool("task_cancel", {"task_id": task.task_id}))

        assert data["success"] is False
        assert "already completed" in data["error"]


class TestHealthCheck:
    @pytest.mark.anyio
    async def test_health_check_reports_worker_and_stats(self, client: Client, store):
        await store.create_task("u", "t", params={"query": "q"})

        data = _payload(await client.call_tool("health_check", {}))

        assert data["status"] == "healthy"
        assert data["memory_mb"] > 0
        assert data["worker"]["status"] == "stopped"
        assert data["worker"]["max_concurrent"] == 2
        assert data["stats"]["pending_count"] == 1

    @pytest.mark.anyio
    async def test_health_check_without_worker(self, store):
        async with Client(serve(store=store, start_worker=False)) as client:
            data = _payload(await client.call_tool("health_check", {}))
        assert data["worker"] == {"status": "disabled"}


@pytest.mark.anyio
async def test_worker_in_lifespan_completes_submitted_task(store, fakes):
    app_settings = AppSettings(
        worker=WorkerSettings(poll_interval=0.01, max_concurrent_tasks=1),
        pipeline=PipelineSettings(inter_query_delay=0),
    )
    poller, watchdog = build_worker(
        store,
        app_settings=app_settings,
        query_generator=fakes.QueryGenerator(response=["cafes Boston"]),
        search_provider=fakes.SearchProvider({("en", "US"): [{"title": "Cafe", "website": "https://cafe.com"}]}),
        enrichment_provider=fakes.EnrichmentProvider({"https://cafe.com": {"email": "hello@cafe.com"}}),
    )

    async with Client(serve(store=store, poller=poller, watchdog=watchdog, start_worker=True)) as client:
        created = _payload(await client.call_tool("task_create", {"name": "Cafes", "query": "cafes in Boston"}))

        async def _completed() -> dict:
            while True:
                data = _payload(await client.call_tool("task_get", {"task_id": created["task_id"]}))
                if data["status"] == "completed":
                    return data
                await asyncio.sleep(0.02)

        data = await asyncio.wait_for(_completed(), 5)

    assert [r["email"] for r in data["final_results"]] == ["hello@cafe.com"]
    assert data["summary"]["final_count"] == 1
