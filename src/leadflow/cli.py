"""CLI interface for the leadflow task pipeline."""

import asyncio
import json
import signal
from pathlib import Path

import typer

from .config import settings
from .exceptions import LeadflowError
from .pipeline.events import CompletionEvent, PipelineEvent, QueueObserver, StageEvent
from .tasks.models import TaskStatus, TaskType
from .tasks.store import TaskStore

app = typer.Typer(help="Lead search and enrichment task pipeline")


def _store() -> TaskStore:
    return TaskStore()


def _describe_event(event: PipelineEvent) -> str:
    if isinstance(event, StageEvent):
        return f"[{event.task_id[:8]}] {event.current}/{event.total} {event.stage.value}: {event.message}"
    if isinstance(event, CompletionEvent):
        return f"[{event.task_id[:8]}] completed with {len(event.results)} results"
    retry = " (will retry)" if event.will_retry else ""
    return f"[{event.task_id[:8]}] failed{retry}: {event.error}"


async def _print_events(queue: "asyncio.Queue[PipelineEvent]") -> None:
    while True:
        event = await queue.get()
        print(_describe_event(event))
        queue.task_done()


@app.command()
def worker() -> None:
    """Run the background worker until interrupted."""
    from .observability import setup_structured_logging
    from .worker import build_worker

    setup_structured_logging(settings.server.logging_level, settings.server.log_format)

    async def _work() -> None:
        store = _store()
        await store.initialize()
        observer = QueueObserver()
        poller, watchdog = build_worker(store, observer=observer)

        leftover = await store.get_running_tasks()
        if leftover:
            print(f"{len(leftover)} tasks were left running by a previous worker; the watchdog reclaims them once stale")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        printer = asyncio.create_task(_print_events(observer.queue))
        poller.start()
        watchdog.start()
        print(f"Worker running (max {poller.max_concurrent} concurrent). Press Ctrl+C to stop.")
        await stop.wait()
        print("Stopping worker, waiting for running tasks...")
        await watchdog.stop()
        await poller.stop()
        await observer.queue.join()
        printer.cancel()

    try:
        asyncio.run(_work())
    except LeadflowError as e:
        print(f"Error: {e}")
        raise typer.Exit(1) from e


@app.command()
def server() -> None:
    """Start the MCP server (with the worker unless LEADFLOW_WORKER_ENABLED=false)."""
    from .server import main

    main()


@app.command()
def submit(
    text: str = typer.Argument(..., help="Organizations to find, or a website URL with --url"),
    name: str = typer.Option(None, "--name", "-n", help="Task name (defaults to the text)"),
    url: bool = typer.Option(False, "--url", "-u", help="Treat TEXT as a website to enrich"),
    result_count: int = typer.Option(None, "--count", "-c", help="Maximum number of results"),
    owner: str = typer.Option("cli", "--owner", "-o", help="Owner identifier"),
) -> None:
    """Submit a task for the worker to pick up."""
    task_type = TaskType.URL_ENRICH if url else TaskType.SEARCH_AND_ENRICH
    params = {
        "query": None if url else text,
        "url": text if url else None,
        "result_count": result_count or settings.pipeline.default_result_count,
    }

    try:
        task = asyncio.run(_store().create_task(owner, name or text, task_type, params))
    except LeadflowError as e:
        print(f"Error: {e}")
        raise typer.Exit(1) from e

    print(f"Submitted {task.task_type.value} task {task.task_id}")


@app.command()
def status(
    task_id: str = typer.Argument(None, help="Task ID; omit to list recent tasks"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of tasks to list"),
    status_filter: str = typer.Option(None, "--status", "-s", help="Only list tasks with this status"),
    owner: str = typer.Option(None, "--owner", "-o", help="Only list tasks of this owner"),
    active: bool = typer.Option(False, "--active", "-a", help="Only list pending and running tasks"),
) -> None:
    """Show one task or list recent tasks."""
    store = _store()

    if task_id:
        task = asyncio.run(store.get_task(task_id))
        if task is None:
            print(f"Error: Task '{task_id}' not found")
            raise typer.Exit(1)
        print(json.dumps(task.public_view(), indent=2, ensure_ascii=False))
        return

    try:
        filter_status = TaskStatus(status_filter) if status_filter else None
    except ValueError:
        print(f"Error: Invalid status '{status_filter}'")
        raise typer.Exit(1) from None

    if active:
        tasks = [t for t in asyncio.run(store.get_active_tasks(owner)) if filter_status is None or t.status == filter_status][:limit]
    else:
        tasks = asyncio.run(store.get_task_history(limit=limit, owner_id=owner, status=filter_status))
    if not tasks:
        print("No tasks found")
        return
    for t in tasks:
        progress = f"{t.progress_current}/{t.progress_total}"
        print(f"{t.task_id}  {t.status.value:<10} {t.current_stage.value:<18} {progress:<5} {t.name}")


@app.command()
def cancel(task_id: str = typer.Argument(..., help="Task ID to cancel")) -> None:
    """Cancel a pending or running task."""
    task = asyncio.run(_store().cancel_task(task_id))
    if task is None:
        print(f"Error: Task '{task_id}' not found or already finished")
        raise typer.Exit(1)
    print(f"Cancelled task {task.task_id}")


@app.command()
def export(
    task_id: str = typer.Argument(..., help="Completed task to export"),
    output: Path = typer.Option(None, "--output", "-o", help="Output directory (default: results dir)"),
    no_csv: bool = typer.Option(False, "--no-csv", help="Only write the JSON file"),
) -> None:
    """Export a completed task's results to JSON and CSV."""
    from .utils import export_task_results

    task = asyncio.run(_store().get_task(task_id))
    if task is None:
        print(f"Error: Task '{task_id}' not found")
        raise typer.Exit(1)
    if task.status != TaskStatus.COMPLETED:
        print(f"Error: Task '{task_id}' is {task.status.value}, not completed")
        raise typer.Exit(1)

    for path in export_task_results(task, directory=output, include_csv=not no_csv):
        print(f"Wrote {path}")


@app.command()
def cleanup(days: int = typer.Option(30, "--days", "-d", help="Delete finished tasks older than this many days")) -> None:
    """Delete old completed, failed and cancelled tasks."""
    if days < 1:
        print("Error: --days must be at least 1")
        raise typer.Exit(1)
    deleted = asyncio.run(_store().cleanup_old_tasks(days=days))
    print(f"Deleted {deleted} tasks older than {days} days")


@app.command()
def config() -> None:
    """Show current configuration."""
    print(f"Provider: {settings.llm.provider}")
    print(f"Model: {settings.llm.model_name}")
    print(f"Base URL: {settings.llm.base_url or '(default)'}")
    print(f"Apify token: {'set' if settings.apify.get_api_token() else '(missing)'}")
    print(f"Search actor: {settings.apify.search_actor}")
    print(f"Enrichment actor: {settings.apify.enrichment_actor}")
    print(f"Max concurrent tasks: {settings.worker.max_concurrent_tasks}")
    print(f"Max retries: {settings.worker.max_retries}")
    print(f"Poll interval: {settings.worker.poll_interval}s")
    print(f"Database: {settings.get_db_path()}")


if __name__ == "__main__":
    app()
