"""Pipeline orchestrator: runs the fixed stage sequence of one task with durable progress."""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..clients.base import EnrichmentProvider, QueryGenerator, SearchProvider
from ..config import PipelineSettings, settings
from ..exceptions import StoreError, TaskCancelledError, TaskClaimError, TaskValidationError
from ..observability import get_task_logger
from ..tasks.models import STAGE_PROGRESS, STAGE_TOTALS, LeadResult, TaskRecord, TaskStage, TaskStatus, TaskType
from ..tasks.store import TaskStore
from .aggregate import aggregate_candidates
from .enrich import enrich_candidates
from .events import CompletionEvent, NullObserver, PipelineObserver, StageEvent
from .links import canonical_link, is_http_url
from .models import Candidate
from .outcome import PartialSuccess, StageFailure, StageOutcome, T, unwrap
from .queries import generate_query_plan
from .ranking import filter_contactable, rank_results
from .search import search_candidates

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """State of one execution attempt."""

    task: TaskRecord
    cancel_event: asyncio.Event | None
    position: int = -1
    failures: dict[str, list[StageFailure]] = field(default_factory=dict)

    @property
    def task_id(self) -> str:
        return self.task.task_id


class PipelineOrchestrator:
    """Executes one task from ``initializing`` to ``complete``.

    Progress is written to the store before each stage begins, so a crash
    leaves the task showing the last stage it entered. Cancellation is checked
    at every stage boundary. The orchestrator keeps no per-task state between
    calls and can serve several tasks concurrently.
    """

    def __init__(
        self,
        store: TaskStore,
        query_generator: QueryGenerator,
        search_provider: SearchProvider,
        enrichment_provider: EnrichmentProvider,
        pipeline_settings: PipelineSettings | None = None,
        observer: PipelineObserver | None = None,
    ):
        self.store = store
        self.query_generator = query_generator
        self.search_provider = search_provider
        self.enrichment_provider = enrichment_provider
        self.settings = pipeline_settings or settings.pipeline
        self.observer = observer or NullObserver()

    async def execute(self, task_id: str, cancel_event: asyncio.Event | None = None) -> list[LeadResult]:
        """Claim and run a pending task, returning its final results.

        Raises:
            TaskCancelledError: Cancellation was observed at a stage boundary.
            TaskClaimError: The task was not pending or ownership was lost.
            TaskValidationError: Task parameters cannot be executed.
            CollaboratorError: A stage failed fatally.
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise StoreError(f"Task {task_id} not found")
        if task.status == TaskStatus.CANCELLED:
            raise TaskCancelledError(f"Task {task_id} was cancelled before it started")

        claimed = await self.store.mark_running(task_id)
        if claimed is None:
            current = await self.store.get_task(task_id)
            if current is not None and current.status == TaskStatus.CANCELLED:
                raise TaskCancelledError(f"Task {task_id} was cancelled before it started")
            status = current.status.value if current else "missing"
            raise TaskClaimError(f"Task {task_id} could not be claimed (status: {status})")

        run = _Run(task=claimed, cancel_event=cancel_event)
        get_task_logger().info("pipeline_started", task_type=claimed.task_type.value, attempt=claimed.retry_count + 1)

        if claimed.task_type == TaskType.URL_ENRICH:
            return await self._run_url_enrich(run)
        return await self._run_search_and_enrich(run)

    # --- Workflows ---

    async def _run_search_and_enrich(self, run: _Run) -> list[LeadResult]:
        params = run.task.input_params
        if not params.query:
            raise TaskValidationError("A search-and-enrich task requires a query")
        query = params.query
        cfg = self.settings

        await self._advance(run, TaskStage.INITIALIZING, "Starting search")

        await self._advance(run, TaskStage.QUERY_GENERATION, "Generating search queries")
        plan = self._take(run, TaskStage.QUERY_GENERATION, await generate_query_plan(self.query_generator, query, cfg.max_queries))

        await self._advance(run, TaskStage.CANDIDATE_SEARCH, f"Searching with {len(plan)} queries")
        candidates = self._take(
            run,
            TaskStage.CANDIDATE_SEARCH,
            await search_candidates(
                self.search_provider,
                plan,
                params.result_count,
                search_buffer=cfg.search_buffer,
                query_timeout=cfg.query_timeout,
                fanout_timeout=cfg.fanout_timeout,
                inter_query_delay=cfg.inter_query_delay,
            ),
        )

        await self._advance(run, TaskStage.AGGREGATION, f"Deduplicating {len(candidates)} candidates")
        unique = aggregate_candidates(candidates)

        await self._advance(run, TaskStage.DETAIL_ENRICHMENT, f"Enriching {len(unique)} websites")
        enriched = await enrich_candidates(self.enrichment_provider, unique, timeout=cfg.enrichment_timeout)
        merged = self._take(run, TaskStage.DETAIL_ENRICHMENT, enriched)

        await self._advance(run, TaskStage.CONTACT_FILTER, f"Filtering {len(merged)} results by contact details")
        contactable = filter_contactable(merged, accept_phone=cfg.accept_phone_contact)

        await self._advance(run, TaskStage.RELEVANCE_RANK, f"Ranking {len(contactable)} results")
        ranked = rank_results(contactable, query, params.result_count)

        summary = {
            "query": query,
            "queries": [asdict(spec) for spec in plan],
            "languages": sorted({spec.language for spec in plan}),
            "regions": sorted({spec.region for spec in plan}),
            "total_found": len(candidates),
            "unique_count": len(unique),
            "enriched_count": sum(1 for r in merged if r.data_source == "search_with_enrichment"),
            "contactable_count": len(contactable),
            "final_count": len(ranked),
        }
        return await self._complete(run, ranked, summary)

    async def _run_url_enrich(self, run: _Run) -> list[LeadResult]:
        url = run.task.input_params.url
        if not url or not is_http_url(url):
            raise TaskValidationError(f"Invalid URL format: {url!r}")

        await self._advance(run, TaskStage.INITIALIZING, "Preparing URL enrichment")

        await self._advance(run, TaskStage.DETAIL_ENRICHMENT, f"Extracting contact details from {url}")
        seed = Candidate(name=run.task.name, website=url, canonical_link=canonical_link(url))
        results = self._take(
            run,
            TaskStage.DETAIL_ENRICHMENT,
            await enrich_candidates(self.enrichment_provider, [seed], timeout=self.settings.enrichment_timeout),
        )

        summary = {
            "url": url,
            "final_count": len(results),
            "has_contact_info": any(r.has_contact_info for r in results),
        }
        return await self._complete(run, results, summary)

    # --- Stage plumbing ---

    async def _advance(self, run: _Run, stage: TaskStage, message: str) -> None:
        """Check for cancellation, then persist entry into stage."""
        await self._checkpoint(run)

        position = STAGE_PROGRESS[run.task.task_type][stage]
        if position < run.position:
            raise RuntimeError(f"Stage {stage.value} would move task {run.task_id} backwards")
        run.position = position

        total = STAGE_TOTALS[run.task.task_type]
        try:
            await self.store.update_progress(run.task_id, stage, position, total, message)
        except StoreError as e:
            # Progress is advisory; claim and terminal transitions stay strict.
            logger.warning(f"Task {run.task_id} progress write failed at {stage.value}: {e}")
        logger.info(f"Task {run.task_id} progress {position}/{total}: {message}")
        get_task_logger().info("stage_started", stage=stage.value, current=position, total=total)
        await self.observer.on_stage(StageEvent(task_id=run.task_id, stage=stage, current=position, total=total, message=message))

    async def _checkpoint(self, run: _Run) -> None:
        if run.cancel_event is not None and run.cancel_event.is_set():
            raise TaskCancelledError(f"Task {run.task_id} was cancelled")

        stored = await self.store.get_task(run.task_id)
        if stored is None or stored.status == TaskStatus.CANCELLED:
            raise TaskCancelledError(f"Task {run.task_id} was cancelled")
        if stored.status != TaskStatus.RUNNING:
            raise TaskClaimError(f"Task {run.task_id} is no longer running (status: {stored.status.value})")

    @staticmethod
    def _take(run: _Run, stage: TaskStage, outcome: StageOutcome[T]) -> T:
        """Unwrap a stage outcome, remembering what a partial success absorbed."""
        if isinstance(outcome, PartialSuccess) and outcome.failures:
            run.failures.setdefault(stage.value, []).extend(outcome.failures)
            logger.warning(f"Task {run.task_id} stage {stage.value} degraded: {len(outcome.failures)} failures")
        return unwrap(outcome)

    async def _complete(self, run: _Run, results: list[LeadResult], summary: dict[str, Any]) -> list[LeadResult]:
        await self._checkpoint(run)
        position = STAGE_PROGRESS[run.task.task_type][TaskStage.COMPLETE]
        run.position = position

        summary = {
            **summary,
            "degraded": {stage: [asdict(f) for f in failures] for stage, failures in run.failures.items()},
            "finished_at": datetime.now(UTC).isoformat(),
        }
        completed = await self.store.mark_completed(run.task_id, results, summary)
        if completed is None:
            current = await self.store.get_task(run.task_id)
            if current is not None and current.status == TaskStatus.CANCELLED:
                raise TaskCancelledError(f"Task {run.task_id} was cancelled")
            raise TaskClaimError(f"Task {run.task_id} could not be completed")

        total = STAGE_TOTALS[run.task.task_type]
        message = f"Completed with {len(results)} results"
        await self.observer.on_stage(StageEvent(task_id=run.task_id, stage=TaskStage.COMPLETE, current=position, total=total, message=message))
        await self.observer.on_completed(CompletionEvent(task_id=run.task_id, results=results))
        get_task_logger().info("pipeline_completed", results=len(results))
        logger.info(f"Task {run.task_id} completed with {len(results)} results")
        return results
