"""Retry handling for failed executions and the stale running-task watchdog."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from ..exceptions import StageTimeoutError, StaleRunningError, StoreError, TaskCancelledError, TaskClaimError, TaskValidationError
from ..observability import get_task_logger
from ..pipeline.events import FailureEvent, NullObserver, PipelineObserver
from .models import TaskRecord, TaskStatus
from .store import TaskStore

if TYPE_CHECKING:
    from ..pipeline.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


class RetryHandler:
    """Runs one task through the orchestrator and decides its fate on failure.

    A failed attempt returns the task to the pending pool until it has been
    retried ``max_retries`` times; after that the task is marked failed.
    Cancellation always wins over retry.
    """

    def __init__(
        self,
        store: TaskStore,
        orchestrator: "PipelineOrchestrator",
        max_retries: int = 3,
        observer: PipelineObserver | None = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.max_retries = max_retries
        self.observer = observer or NullObserver()

    async def run(self, task: TaskRecord, cancel_event: asyncio.Event | None = None) -> TaskStatus | None:
        """Execute task and record its outcome. Returns the resulting status, if known."""
        try:
            await self.orchestrator.execute(task.task_id, cancel_event)
            return TaskStatus.COMPLETED
        except TaskCancelledError as e:
            logger.info(f"Task {task.task_id} cancelled: {e}")
            get_task_logger().info("task_cancelled")
            await self._record_cancel(task.task_id)
            return TaskStatus.CANCELLED
        except TaskClaimError as e:
            # Another owner holds the task; leave its record alone.
            logger.warning(str(e))
            return None
        except Exception as e:
            return await self.handle_failure(task.task_id, e)

    async def handle_failure(self, task_id: str, error: Exception) -> TaskStatus | None:
        """Schedule a retry or mark the task failed. Store errors are logged only."""
        try:
            current = await self.store.get_task(task_id)
            if current is None:
                logger.error(f"Task {task_id} vanished while recording failure: {error}")
                return None
            if current.status == TaskStatus.CANCELLED or current.is_terminal:
                return current.status

            cause = str(error) or type(error).__name__
            if isinstance(error, StageTimeoutError):
                get_task_logger().warning("task_timeout", error=cause, attempt=current.retry_count + 1)
            else:
                get_task_logger().error("task_attempt_failed", error=cause, error_type=type(error).__name__, attempt=current.retry_count + 1)

            if isinstance(error, TaskValidationError):
                return await self._fail(task_id, f"Invalid task: {cause}", cause)

            if current.retry_count < self.max_retries:
                attempt = current.retry_count + 1
                message = f"Attempt {attempt}: {cause}"
                retried = await self.store.schedule_retry(task_id, attempt, message)
                if retried is None:
                    return await self._refresh_status(task_id)
                logger.warning(f"Task {task_id} failed, scheduling retry {attempt}/{self.max_retries}: {cause}")
                await self.observer.on_failed(FailureEvent(task_id=task_id, error=message, will_retry=True))
                return TaskStatus.PENDING

            return await self._fail(task_id, f"Failed after {current.retry_count} retries. Last error: {cause}", cause)
        except StoreError as store_error:
            logger.error(f"Could not record failure of task {task_id} ({error}): {store_error}")
            return None

    async def _fail(self, task_id: str, message: str, cause: str) -> TaskStatus | None:
        failed = await self.store.mark_failed(task_id, message)
        if failed is None:
            return await self._refresh_status(task_id)
        logger.error(f"Task {task_id} failed: {message}")
        get_task_logger().error("task_failed", error=cause)
        await self.observer.on_failed(FailureEvent(task_id=task_id, error=message))
        return TaskStatus.FAILED

    async def _record_cancel(self, task_id: str) -> None:
        try:
            await self.store.cancel_task(task_id)
        except StoreError as e:
            logger.error(f"Could not record cancellation of task {task_id}: {e}")

    async def _refresh_status(self, task_id: str) -> TaskStatus | None:
        current = await self.store.get_task(task_id)
        return current.status if current else None


class StaleTaskWatchdog:
    """Periodically returns orphaned running tasks to the pending pool.

    Tasks executing in this process are skipped until they have made no
    progress for ``owned_timeout_minutes``; then the owner is asked to abort
    the execution before the task is reclaimed.
    """

    def __init__(
        self,
        store: TaskStore,
        timeout_minutes: float = 5,
        interval: float = 60,
        max_retries: int = 3,
        is_owned: Callable[[str], bool] | None = None,
        abort_owned: Callable[[str], Awaitable[bool]] | None = None,
        owned_timeout_minutes: float = 45,
    ):
        self.store = store
        self.timeout_minutes = timeout_minutes
        self.interval = interval
        self.max_retries = max_retries
        self.is_owned = is_owned or (lambda task_id: False)
        self.abort_owned = abort_owned
        self.owned_timeout_minutes = owned_timeout_minutes
        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def run_once(self, now: datetime | None = None) -> list[str]:
        """Scan for stale running tasks. Returns the ids reset to pending."""
        now = now or datetime.now(UTC)
        stuck = await self.store.list_stuck_running(self.timeout_minutes, now=now)
        reset: list[str] = []

        for task in stuck:
            idle_minutes = (now - task.updated_at).total_seconds() / 60
            if self.is_owned(task.task_id):
                if self.abort_owned is None or idle_minutes < self.owned_timeout_minutes:
                    continue
                logger.error(f"Watchdog: aborting local execution of task {task.task_id} after {idle_minutes:.1f} min without progress")
                await self.abort_owned(task.task_id)

            stale = StaleRunningError(task.task_id, idle_minutes)
            logger.warning(f"Watchdog: {stale}")

            if task.retry_count >= self.max_retries:
                message = f"Failed after {task.retry_count} retries. Last error: {stale}"
                if await self.store.mark_failed(task.task_id, message):
                    logger.error(f"Watchdog marked task {task.task_id} failed: retries exhausted")
                continue

            recovered = await self.store.reset_stale(task.task_id, f"Attempt {task.retry_count + 1}: {stale}")
            if recovered is not None:
                reset.append(task.task_id)
                logger.info(f"Watchdog reset task {task.task_id} to pending (retry {recovered.retry_count})")

        return reset

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._loop(), name="stale-task-watchdog")
        logger.info(f"Watchdog started (interval {self.interval}s, timeout {self.timeout_minutes} min)")

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._stop_event.set()
        await self._loop_task
        self._loop_task = None
        logger.info("Watchdog stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Watchdog scan failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                pass
