"""MCP server exposing task submission and monitoring, with the background worker in its lifespan."""

import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import psutil
from fastmcp import FastMCP

from .config import settings
from .exceptions import LeadflowError, TaskValidationError
from .observability import setup_structured_logging
from .tasks.models import TaskRecord, TaskStatus, TaskType
from .tasks.recovery import StaleTaskWatchdog
from .tasks.store import TaskStore
from .worker import TaskPoller, build_worker

logger = logging.getLogger("leadflow")

# Track server start time for uptime calculation
_server_start_time = time.time()


async def _resolve_task(store: TaskStore, task_id: str) -> TaskRecord | None:
    """Find a task by full id, falling back to a prefix match over recent tasks."""
    task_id = task_id.strip()
    if not task_id:
        return None
    task = await store.get_task(task_id)
    if task is not None:
        return task
    for candidate in await store.get_task_history(limit=100):
        if candidate.task_id.startswith(task_id):
            return candidate
    return None


def serve(
    store: TaskStore | None = None,
    poller: TaskPoller | None = None,
    watchdog: StaleTaskWatchdog | None = None,
    start_worker: bool | None = None,
) -> FastMCP:
    """Create the MCP server.

    The worker runs inside the server lifespan when start_worker is true
    (default: LEADFLOW_WORKER_ENABLED). A poller passed in without starting it
    is still used for cancellation and health reporting.
    """
    setup_structured_logging(settings.server.logging_level, settings.server.log_format)
    task_store = store or TaskStore()
    run_worker = settings.worker.enabled if start_worker is None else start_worker
    worker: dict[str, TaskPoller | StaleTaskWatchdog | None] = {"poller": poller, "watchdog": watchdog}

    @asynccontextmanager
    async def lifespan(app: FastMCP) -> AsyncIterator[None]:
        await task_store.initialize()
        if not run_worker:
            yield
            return

        if worker["poller"] is None:
            worker["poller"], worker["watchdog"] = build_worker(task_store)
        active_poller = worker["poller"]
        active_watchdog = worker["watchdog"]
        active_poller.start()
        if active_watchdog is not None:
            active_watchdog.start()
        try:
            yield
        finally:
            if active_watchdog is not None:
                await active_watchdog.stop()
            await active_poller.stop()

    server = FastMCP("leadflow", lifespan=lifespan)

    @server.tool()
    async def task_create(
        name: str,
        query: str | None = None,
        url: str | None = None,
        result_count: int | None = None,
        owner_id: str = "default",
    ) -> str:
        """
        Submit a search-and-enrich or url-enrich task.

        Give a free-text query ("yoga studios Dubai") to find organizations, or
        a single website url to extract its contact details.

        Args:
            name: Human-readable task name
            query: Free-text description of the organizations to find
            url: Website to enrich (used when no query is given)
            result_count: Maximum number of results to keep (1-500, default 10)
            owner_id: Identifier of the submitting user

        Returns:
            JSON with the new task id and status
        """
        task_type = TaskType.SEARCH_AND_ENRICH if query else TaskType.URL_ENRICH
        params = {"query": query, "url": url, "result_count": result_count or settings.pipeline.default_result_count}
        try:
            task = await task_store.create_task(owner_id, name, task_type, params)
        except TaskValidationError as e:
            return json.dumps({"success": False, "error": str(e)})

        logger.info(f"Created task {task.task_id} ({task_type.value}) for {owner_id}")
        return json.dumps(
            {
                "success": True,
                "task_id": task.task_id,
                "task_type": task.task_type.value,
                "status": task.status.value,
            },
            indent=2,
        )

    @server.tool()
    async def task_get(task_id: str) -> str:
        """
        Get full details of a specific task.

        Args:
            task_id: Task ID (full or prefix)

        Returns:
            JSON object with status, progress, results and error
        """
        task = await _resolve_task(task_store, task_id)
        if not task:
            return json.dumps({"success": False, "error": f"Task '{task_id}' not found"})

        return json.dumps(
            {
                **task.public_view(),
                "owner_id": task.owner_id,
                "input": task.input_params.model_dump(mode="json"),
                "summary": task.summary,
                "timestamps": {
                    "created": task.created_at.isoformat(),
                    "updated": task.updated_at.isoformat(),
                    "started": task.started_at.isoformat() if task.started_at else None,
                    "completed": task.completed_at.isoformat() if task.completed_at else None,
                    "duration_sec": round(task.duration_seconds, 1) if task.duration_seconds else None,
                },
            },
            indent=2,
            ensure_ascii=False,
        )

    @server.tool()
    async def task_list(
        limit: int = 20,
        status_filter: str | None = None,
        owner_id: str | None = None,
        active_only: bool = False,
    ) -> str:
        """
        List recent tasks with optional filtering.

        Args:
            limit: Maximum number of tasks to return (default 20)
            status_filter: Optional status filter (pending, running, completed, failed, cancelled)
            owner_id: Only list tasks of this owner
            active_only: Only list pending and running tasks

        Returns:
            JSON list of recent tasks
        """
        status = None
        if status_filter:
            try:
                status = TaskStatus(status_filter)
            except ValueError:
                valid = ", ".join(s.value for s in TaskStatus)
                return json.dumps({"success": False, "error": f"Invalid status '{status_filter}'. Use: {valid}"})

        if active_only:
            tasks = [t for t in await task_store.get_active_tasks(owner_id) if status is None or t.status == status][:limit]
        else:
            tasks = await task_store.get_task_history(limit=limit, owner_id=owner_id, status=status)

        return json.dumps(
            {
                "tasks": [
                    {
                        "task_id": t.task_id,
                        "name": t.name,
                        "task_type": t.task_type.value,
                        "status": t.status.value,
                        "stage": t.current_stage.value,
                        "progress": f"{t.progress_current}/{t.progress_total}",
                        "retry_count": t.retry_count,
                        "created": t.created_at.isoformat(),
                        "results": len(t.final_results),
                    }
                    for t in tasks
                ],
                "count": len(tasks),
            },
            indent=2,
        )

    @server.tool()
    async def task_cancel(task_id: str) -> str:
        """
        Cancel a pending or running task.

        Args:
            task_id: Task ID (full or prefix match)

        Returns:
            JSON with success status and message
        """
        task = await _resolve_task(task_store, task_id)
        if not task:
            return json.dumps({"success": False, "error": f"Task '{task_id}' not found"})
        if task.is_terminal:
            return json.dumps({"success": False, "error": f"Task '{task.task_id}' already {task.status.value}"})

        active_poller = worker["poller"]
        if active_poller is not None:
            was_local = await active_poller.cancel(task.task_id)
        else:
            await task_store.cancel_task(task.task_id)
            was_local = False

        current = await task_store.get_task(task.task_id)
        if current is None or current.status != TaskStatus.CANCELLED:
            status = current.status.value if current else "missing"
            return json.dumps({"success": False, "error": f"Task '{task.task_id}' could not be cancelled (status: {status})"})

        return json.dumps({"success": True, "task_id": task.task_id, "was_running": was_local, "message": "Task cancelled"})

    @server.tool()
    async def health_check() -> str:
        """
        Health check endpoint with worker state and task statistics.

        Returns:
            JSON object with server health, worker status and statistics
        """
        stats = await task_store.get_stats()
        active_poller = worker["poller"]
        memory_info = psutil.Process().memory_info()

        return json.dumps(
            {
                "status": "healthy",
                "uptime_seconds": round(time.time() - _server_start_time, 1),
                "memory_mb": round(memory_info.rss / 1024 / 1024, 1),
                "worker": active_poller.health_check() if active_poller is not None else {"status": "disabled"},
                "stats": stats,
            },
            indent=2,
        )

    return server


def main() -> None:
    """Entry point for MCP server."""
    transport = settings.server.transport

    try:
        server_instance = serve()
    except LeadflowError as e:
        logger.error(f"Failed to start server: {e}")
        raise SystemExit(1) from e

    if transport == "stdio":
        server_instance.run(transport="stdio")
    elif transport in ("streamable-http", "sse"):
        logger.info(f"Starting leadflow server (transport: {transport})")
        logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
        server_instance.run(transport=transport, host=settings.server.host, port=settings.server.port)
    else:
        raise ValueError(f"Unknown transport: {transport}")


if __name__ == "__main__":
    main()
