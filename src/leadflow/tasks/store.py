"""SQLite-based task store: the durable record every component coordinates through."""

import asyncio
import json
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, ValidationError

from ..exceptions import StoreError, TaskValidationError
from .models import (
    STAGE_TOTALS,
    TERMINAL_STATUSES,
    LeadResult,
    TaskParams,
    TaskRecord,
    TaskStage,
    TaskStatus,
    TaskType,
    allowed_sources,
)

_UPDATABLE_COLUMNS = frozenset(
    {
        "name",
        "status",
        "current_stage",
        "updated_at",
        "started_at",
        "completed_at",
        "progress_current",
        "progress_total",
        "progress_message",
        "input_params",
        "retry_count",
        "error_message",
        "final_results",
        "summary",
    }
)

MAX_ERROR_LENGTH = 2000


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so stored values order lexicographically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _encode(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, list):
        return json.dumps([item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in value])
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


def _decode_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        loaded = json.loads(raw)
    except json.JSONDecodeError:
        return default
    return loaded if isinstance(loaded, type(default)) else default


class TaskStore:
    """Async SQLite store for task state.

    Every mutation is a single-row UPDATE keyed by task id. Status changes are
    conditional on the current status being a legal source for the target
    status, so a concurrent cancel is never overwritten by a late completion.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize TaskStore.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/leadflow/tasks.db
        """
        if db_path is None:
            from ..config import settings

            db_path = settings.get_db_path()
        self.db_path = Path(db_path)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA busy_timeout = 5000")
                yield db
        except aiosqlite.Error as e:
            raise StoreError(f"Task store operation failed: {e}") from e

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        # Concurrent callers (poller, watchdog, server tools) can race on PRAGMAs/DDL.
        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS tasks (
                        task_id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        task_type TEXT NOT NULL,
                        status TEXT NOT NULL,
                        current_stage TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        started_at TEXT,
                        completed_at TEXT,
                        progress_current INTEGER DEFAULT 0,
                        progress_total INTEGER DEFAULT 0,
                        progress_message TEXT,
                        input_params TEXT NOT NULL,
                        retry_count INTEGER DEFAULT 0,
                        error_message TEXT,
                        final_results TEXT,
                        summary TEXT
                    )
                """)
                await db.execute("CREATE INDEX IF NOT EXISTS idx_status_created ON tasks(status, created_at)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_status_updated ON tasks(status, updated_at)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_owner ON tasks(owner_id)")
                await db.commit()

            self._initialized = True

    # --- Creation / lookup ---

    async def create_task(
        self,
        owner_id: str,
        name: str,
        task_type: TaskType | str = TaskType.SEARCH_AND_ENRICH,
        params: TaskParams | dict[str, Any] | None = None,
    ) -> TaskRecord:
        """Validate user input and insert a new pending task."""
        try:
            task_type = TaskType(task_type)
            task_params = params if isinstance(params, TaskParams) else TaskParams.model_validate(params or {})
        except (ValueError, ValidationError) as e:
            raise TaskValidationError(f"Invalid task parameters: {e}") from e

        if task_type == TaskType.SEARCH_AND_ENRICH and not task_params.query:
            raise TaskValidationError("A search-and-enrich task requires a query")
        if task_type == TaskType.URL_ENRICH and not task_params.url:
            raise TaskValidationError("A url-enrich task requires a url")

        record = TaskRecord(
            task_id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name.strip() or (task_params.query or task_params.url or "untitled"),
            task_type=task_type,
            input_params=task_params,
            progress_total=STAGE_TOTALS[task_type],
            progress_message="Task created, waiting for a worker",
        )
        await self.add_task(record)
        return record

    async def add_task(self, task: TaskRecord) -> None:
        """Insert a fully-formed task record."""
        await self.initialize()

        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO tasks (
                    task_id, owner_id, name, task_type, status, current_stage,
                    created_at, updated_at, started_at, completed_at,
                    progress_current, progress_total, progress_message,
                    input_params, retry_count, error_message, final_results, summary
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    task.task_id,
                    task.owner_id,
                    task.name,
                    task.task_type.value,
                    task.status.value,
                    task.current_stage.value,
                    _ts(task.created_at),
                    _ts(task.updated_at),
                    _encode(task.started_at),
                    _encode(task.completed_at),
                    task.progress_current,
                    task.progress_total,
                    task.progress_message,
                    task.input_params.model_dump_json(),
                    task.retry_count,
                    task.error_message,
                    _encode(task.final_results),
                    _encode(task.summary),
                ),
            )
            await db.commit()

    async def get_task(self, task_id: str) -> TaskRecord | None:
        """Get a single task by ID."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)) as cursor:
                row = await cursor.fetchone()
        return self._row_to_task(row) if row else None

    async def list_pending(self, limit: int = 10) -> list[TaskRecord]:
        """Pending tasks, oldest first."""
        return await self._select(
            "SELECT * FROM tasks WHERE status = ? ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (TaskStatus.PENDING.value, limit),
        )

    async def list_stuck_running(
        self,
        timeout_minutes: float,
        limit: int = 50,
        now: datetime | None = None,
    ) -> list[TaskRecord]:
        """Running tasks whose last update is older than timeout_minutes."""
        cutoff = (now or datetime.now(UTC)) - timedelta(minutes=timeout_minutes)
        return await self._select(
            "SELECT * FROM tasks WHERE status = ? AND updated_at < ? ORDER BY updated_at ASC LIMIT ?",
            (TaskStatus.RUNNING.value, _ts(cutoff), limit),
        )

    async def get_running_tasks(self) -> list[TaskRecord]:
        """Get all currently running tasks."""
        return await self._select(
            "SELECT * FROM tasks WHERE status = ? ORDER BY updated_at ASC",
            (TaskStatus.RUNNING.value,),
        )

    async def get_active_tasks(self, owner_id: str | None = None) -> list[TaskRecord]:
        """Pending or running tasks, newest first, optionally of one owner."""
        if owner_id is None:
            return await self._select(
                "SELECT * FROM tasks WHERE status IN (?, ?) ORDER BY created_at DESC",
                (TaskStatus.PENDING.value, TaskStatus.RUNNING.value),
            )
        return await self._select(
            "SELECT * FROM tasks WHERE owner_id = ? AND status IN (?, ?) ORDER BY created_at DESC",
            (owner_id, TaskStatus.PENDING.value, TaskStatus.RUNNING.value),
        )

    async def get_task_history(
        self,
        limit: int = 100,
        owner_id: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[TaskRecord]:
        """Get task history with optional filtering."""
        query = "SELECT * FROM tasks"
        params: list = []
        conditions = []

        if owner_id:
            conditions.append("owner_id = ?")
            params.append(owner_id)

        if status:
            conditions.append("status = ?")
            params.append(status.value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return await self._select(query, params)

    # --- Mutation ---

    async def update_task(self, task_id: str, **fields: Any) -> TaskRecord:
        """Unconditionally update the given columns of one task.

        updated_at is refreshed unless the caller passes it explicitly.
        """
        await self.initialize()

        assignments, values = self._assignments(fields)
        async with self._connect() as db:
            cursor = await db.execute(f"UPDATE tasks SET {assignments} WHERE task_id = ?", (*values, task_id))
            await db.commit()
            updated = cursor.rowcount
        if updated == 0:
            raise StoreError(f"Task {task_id} not found")

        task = await self.get_task(task_id)
        if task is None:
            raise StoreError(f"Task {task_id} disappeared during update")
        return task

    async def update_progress(
        self,
        task_id: str,
        stage: TaskStage,
        current: int,
        total: int,
        message: str | None = None,
    ) -> None:
        """Record the stage a task is entering."""
        await self.update_task(
            task_id,
            current_stage=stage,
            progress_current=current,
            progress_total=total,
            progress_message=message,
        )

    async def mark_running(self, task_id: str) -> TaskRecord | None:
        """Claim a pending task. Returns None when the task is no longer pending."""
        now = datetime.now(UTC)
        return await self._transition(
            task_id,
            TaskStatus.RUNNING,
            current_stage=TaskStage.INITIALIZING,
            progress_current=0,
            started_at=now,
            completed_at=None,
        )

    async def mark_completed(
        self,
        task_id: str,
        results: list[LeadResult],
        summary: dict[str, Any] | None = None,
    ) -> TaskRecord | None:
        """Persist final results of a running task."""
        task = await self.get_task(task_id)
        total = task.progress_total if task else len(results)
        return await self._transition(
            task_id,
            TaskStatus.COMPLETED,
            current_stage=TaskStage.COMPLETE,
            progress_current=total,
            progress_message=f"Completed with {len(results)} results",
            final_results=results,
            summary=summary or {},
            completed_at=datetime.now(UTC),
        )

    async def mark_failed(self, task_id: str, message: str) -> TaskRecord | None:
        return await self._transition(
            task_id,
            TaskStatus.FAILED,
            current_stage=TaskStage.FAILED,
            error_message=message[:MAX_ERROR_LENGTH],
            completed_at=datetime.now(UTC),
        )

    async def schedule_retry(self, task_id: str, retry_count: int, message: str) -> TaskRecord | None:
        """Put a running task back into the pending pool for a full restart."""
        return await self._transition(
            task_id,
            TaskStatus.PENDING,
            current_stage=TaskStage.RETRY,
            retry_count=retry_count,
            error_message=message[:MAX_ERROR_LENGTH],
            progress_message=f"Retry {retry_count} scheduled",
        )

    async def reset_stale(self, task_id: str, message: str) -> TaskRecord | None:
        """Return a stuck running task to pending, incrementing retry_count in place."""
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE tasks
                SET status = ?, current_stage = ?, retry_count = retry_count + 1,
                    error_message = ?, progress_message = ?, updated_at = ?
                WHERE task_id = ? AND status = ?
            """,
                (
                    TaskStatus.PENDING.value,
                    TaskStage.RETRY.value,
                    message[:MAX_ERROR_LENGTH],
                    "Recovered by watchdog",
                    _ts(datetime.now(UTC)),
                    task_id,
                    TaskStatus.RUNNING.value,
                ),
            )
            await db.commit()
            updated = cursor.rowcount
        if updated == 0:
            return None
        return await self.get_task(task_id)

    async def cancel_task(self, task_id: str) -> TaskRecord | None:
        """Cancel a pending or running task. Terminal tasks are left untouched."""
        return await self._transition(
            task_id,
            TaskStatus.CANCELLED,
            current_stage=TaskStage.CANCELLED,
            progress_message="Cancelled",
            completed_at=datetime.now(UTC),
        )

    # --- Maintenance ---

    async def get_stats(self) -> dict:
        """Get aggregate statistics."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status") as cursor:
                status_counts = {row[0]: row[1] for row in await cursor.fetchall()}

            async with db.execute("SELECT task_type, COUNT(*) FROM tasks GROUP BY task_type") as cursor:
                type_counts = {row[0]: row[1] for row in await cursor.fetchall()}

            yesterday = _ts(datetime.now(UTC) - timedelta(days=1))
            async with db.execute(
                """
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) as success
                FROM tasks WHERE completed_at > ? AND completed_at IS NOT NULL
            """,
                (TaskStatus.COMPLETED.value, yesterday),
            ) as cursor:
                row = await cursor.fetchone()
                total, success = (row[0] or 0, row[1] or 0) if row else (0, 0)
                success_rate = (success / total * 100) if total > 0 else 0

        return {
            "by_status": status_counts,
            "by_type": type_counts,
            "total_tasks": sum(status_counts.values()),
            "pending_count": status_counts.get(TaskStatus.PENDING.value, 0),
            "running_count": status_counts.get(TaskStatus.RUNNING.value, 0),
            "success_rate_24h": round(success_rate, 1),
        }

    async def cleanup_old_tasks(self, days: int = 30) -> int:
        """Delete terminal tasks created more than N days ago. Returns count deleted."""
        await self.initialize()

        cutoff = _ts(datetime.now(UTC) - timedelta(days=days))
        terminal = [status.value for status in TaskStatus if status in TERMINAL_STATUSES]
        async with self._connect() as db:
            cursor = await db.execute(
                f"DELETE FROM tasks WHERE created_at < ? AND status IN ({', '.join('?' for _ in terminal)})",
                (cutoff, *terminal),
            )
            await db.commit()
            return cursor.rowcount

    # --- Internals ---

    async def _select(self, query: str, params) -> list[TaskRecord]:
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def _transition(self, task_id: str, target: TaskStatus, **fields: Any) -> TaskRecord | None:
        """Conditionally move a task to target. Returns None if its current status forbids it."""
        await self.initialize()

        sources = [status.value for status in allowed_sources(target)]
        assignments, values = self._assignments({"status": target, **fields})
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE tasks SET {assignments} WHERE task_id = ? AND status IN ({', '.join('?' for _ in sources)})",
                (*values, task_id, *sources),
            )
            await db.commit()
            updated = cursor.rowcount
        if updated == 0:
            return None
        return await self.get_task(task_id)

    @staticmethod
    def _assignments(fields: dict[str, Any]) -> tuple[str, list[Any]]:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise StoreError(f"Cannot update unknown task fields: {sorted(unknown)}")
        if "updated_at" not in fields:
            fields = {**fields, "updated_at": datetime.now(UTC)}
        columns = list(fields)
        return ", ".join(f"{column} = ?" for column in columns), [_encode(fields[column]) for column in columns]

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> TaskRecord:
        """Convert DB row to TaskRecord."""
        params = _decode_json(row["input_params"], {})
        results = _decode_json(row["final_results"], [])

        return TaskRecord(
            task_id=row["task_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            task_type=TaskType(row["task_type"]),
            status=TaskStatus(row["status"]),
            current_stage=TaskStage(row["current_stage"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            progress_current=row["progress_current"],
            progress_total=row["progress_total"],
            progress_message=row["progress_message"],
            input_params=TaskParams.model_validate(params),
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            final_results=[LeadResult.model_validate(item) for item in results if isinstance(item, dict)],
            summary=_decode_json(row["summary"], {}),
        )
