"""Background worker: polls the task store and runs pending tasks under a concurrency cap."""

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any, Protocol

from .clients.base import EnrichmentProvider, QueryGenerator, SearchProvider
from .config import AppSettings, settings
from .observability import task_context
from .pipeline.events import PipelineObserver
from .pipeline.orchestrator import PipelineOrchestrator
from .tasks.models import TaskRecord, TaskStatus
from .tasks.recovery import RetryHandler, StaleTaskWatchdog
from .tasks.store import TaskStore

logger = logging.getLogger(__name__)


class TaskRunner(Protocol):
    async def run(self, task: TaskRecord, cancel_event: asyncio.Event | None = None) -> TaskStatus | None: ...


class TaskPoller:
    """Claims pending tasks oldest-first and executes at most ``max_concurrent`` at a time.

    The running registry maps task id to the cooperative cancellation event of
    its execution. It is owned by this poller and may be injected so callers
    can observe it.
    """

    def __init__(
        self,
        store: TaskStore,
        runner: TaskRunner,
        *,
        poll_interval: float = 5,
        max_concurrent: int = 2,
        drain_timeout: float = 1800,
        running: dict[str, asyncio.Event] | None = None,
    ):
        self.store = store
        self.runner = runner
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self.drain_timeout = drain_timeout
        self.running: dict[str, asyncio.Event] = running if running is not None else {}
        self._inflight: set[asyncio.Task] = set()
        self._executions: dict[str, asyncio.Task] = {}
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task | None = None

    @property
    def running_count(self) -> int:
        return len(self.running)

    @property
    def is_started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def is_running_locally(self, task_id: str) -> bool:
        return task_id in self.running

    def start(self) -> None:
        """Begin polling. Calling start on a started poller does nothing."""
        if self.is_started:
            logger.debug("Task poller already started")
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._loop(), name="task-poller")
        logger.info(f"Task poller started (interval {self.poll_interval}s, max {self.max_concurrent} concurrent)")

    async def stop(self) -> None:
        """Stop polling, then wait for in-flight executions up to drain_timeout."""
        self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} running tasks to finish")
            _, still_running = await asyncio.wait(set(self._inflight), timeout=self.drain_timeout)
            if still_running:
                names = sorted(t.get_name() for t in still_running)
                logger.warning(f"{len(still_running)} tasks still running after {self.drain_timeout}s drain: {names}")
        logger.info("Task poller stopped")

    async def poll_once(self) -> list[str]:
        """Run one poll cycle. Returns the ids of tasks started."""
        available = self.max_concurrent - self.running_count
        if available <= 0:
            return []

        pending = await self.store.list_pending(limit=available)
        started: list[str] = []
        for task in pending:
            if task.task_id in self.running:
                continue
            if self.running_count >= self.max_concurrent:
                break

            cancel_event = asyncio.Event()
            self.running[task.task_id] = cancel_event
            execution = asyncio.create_task(self._execute(task, cancel_event), name=f"task-{task.task_id}")
            self._executions[task.task_id] = execution
            self._inflight.add(execution)
            execution.add_done_callback(self._inflight.discard)
            started.append(task.task_id)

        if started:
            logger.info(f"Started {len(started)} tasks ({self.running_count}/{self.max_concurrent} running)")
        return started

    async def cancel(self, task_id: str) -> bool:
        """Cancel a task. Returns True if it was executing in this process."""
        cancel_event = self.running.pop(task_id, None)
        if cancel_event is not None:
            cancel_event.set()
            logger.info(f"Cancellation requested for running task {task_id}")
        # Recorded immediately even for local executions, which only see the
        # event at their next stage boundary.
        await self.store.cancel_task(task_id)
        return cancel_event is not None

    async def abort(self, task_id: str) -> bool:
        """Forcibly stop a local execution without touching its stored status.

        Used when an execution stops making progress. The caller decides what
        becomes of the task record. Returns True if the task was executing here.
        """
        cancel_event = self.running.pop(task_id, None)
        if cancel_event is not None:
            cancel_event.set()
        execution = self._executions.pop(task_id, None)
        if execution is not None and not execution.done():
            execution.cancel()
            await asyncio.wait({execution})
        return cancel_event is not None or execution is not None

    def health_check(self) -> dict[str, Any]:
        return {
            "status": "running" if self.is_started else "stopped",
            "running_count": self.running_count,
            "max_concurrent": self.max_concurrent,
            "poll_interval_ms": int(self.poll_interval * 1000),
            "running_task_ids": list(self.running),
            "timestamp": datetime.now(UTC).isoformat(),
        }

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Poll cycle failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

    async def _execute(self, task: TaskRecord, cancel_event: asyncio.Event) -> None:
        started = time.monotonic()
        status: TaskStatus | None = None
        with task_context(task.task_id, task.task_type.value, attempt=task.retry_count + 1):
            try:
                logger.info(f"Executing task {task.task_id} ({task.task_type.value}, attempt {task.retry_count + 1})")
                status = await self.runner.run(task, cancel_event)
            except asyncio.CancelledError:
                logger.warning(f"Execution of task {task.task_id} aborted")
                raise
            except Exception as e:
                logger.error(f"Task {task.task_id} crashed outside the retry handler: {e}")
            finally:
                if self.running.get(task.task_id) is cancel_event:
                    del self.running[task.task_id]
                if self._executions.get(task.task_id) is asyncio.current_task():
                    del self._executions[task.task_id]
                outcome = status.value if status else "unknown"
                logger.info(f"Task {task.task_id} finished as {outcome} in {time.monotonic() - started:.1f}s")


def build_worker(
    store: TaskStore,
    *,
    app_settings: AppSettings | None = None,
    query_generator: QueryGenerator | None = None,
    search_provider: SearchProvider | None = None,
    enrichment_provider: EnrichmentProvider | None = None,
    observer: PipelineObserver | None = None,
) -> tuple[TaskPoller, StaleTaskWatchdog]:
    """Wire a poller and watchdog from settings. Providers default to the configured LLM and Apify."""
    cfg = app_settings or settings

    if query_generator is None:
        from .clients.query_generator import LLMQueryGenerator
        from .providers import get_llm

        llm = get_llm(
            provider=cfg.llm.provider,
            model=cfg.llm.model_name,
            api_key=cfg.llm.get_api_key_for_provider(),
            base_url=cfg.llm.base_url,
        )
        query_generator = LLMQueryGenerator(llm, max_queries=cfg.pipeline.max_queries)

    if search_provider is None or enrichment_provider is None:
        from .clients.apify import ApifyClient

        apify = ApifyClient(cfg.apify)
        search_provider = search_provider or apify
        enrichment_provider = enrichment_provider or apify

    orchestrator = PipelineOrchestrator(
        store,
        query_generator,
        search_provider,
        enrichment_provider,
        pipeline_settings=cfg.pipeline,
        observer=observer,
    )
    handler = RetryHandler(store, orchestrator, max_retries=cfg.worker.max_retries, observer=observer)
    poller = TaskPoller(
        store,
        handler,
        poll_interval=cfg.worker.poll_interval,
        max_concurrent=cfg.worker.max_concurrent_tasks,
        drain_timeout=cfg.worker.drain_timeout,
    )
    watchdog = StaleTaskWatchdog(
        store,
        timeout_minutes=cfg.worker.stale_timeout_minutes,
        interval=cfg.worker.watchdog_interval,
        max_retries=cfg.worker.max_retries,
        is_owned=poller.is_running_locally,
        abort_owned=poller.abort,
        owned_timeout_minutes=cfg.worker.stalled_local_timeout_minutes,
    )
    return poller, watchdog
