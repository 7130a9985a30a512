"""Candidate search fan-out: one concurrent unit per locale group, sequential within a group."""

import asyncio
import logging
import math

from pydantic import ValidationError

from ..clients.base import SearchProvider, SearchRequest
from ..exceptions import CollaboratorError, StageTimeoutError
from .models import Candidate, QueryGroup, QuerySpec
from .outcome import Fatal, PartialSuccess, StageFailure, StageOutcome, Success
from .queries import group_by_locale

logger = logging.getLogger(__name__)


class GroupSearchError(CollaboratorError):
    """Every query of one locale group failed."""

    def __init__(self, group: QueryGroup, failures: list[StageFailure]):
        self.group = group
        self.failures = failures
        reasons = "; ".join(f.reason for f in failures)
        super().__init__(f"All queries failed for {group.label}: {reasons}")


def per_query_limit(search_buffer: int, total_queries: int, result_count: int) -> int:
    """Split the search buffer across queries, never asking for fewer than result_count."""
    if total_queries <= 0:
        return result_count
    return max(math.ceil(search_buffer / total_queries), result_count)


async def _search_group(
    provider: SearchProvider,
    group: QueryGroup,
    max_items: int,
    query_timeout: float,
    inter_query_delay: float,
) -> tuple[list[Candidate], list[StageFailure]]:
    candidates: list[Candidate] = []
    failures: list[StageFailure] = []

    for index, query in enumerate(group.queries):
        if index > 0 and inter_query_delay > 0:
            await asyncio.sleep(inter_query_delay)

        item = f"{group.label}:{query}"
        request = SearchRequest(query=query, language=group.language, region=group.region, max_items=max_items)
        try:
            raw = await asyncio.wait_for(provider.search(request), timeout=query_timeout)
        except TimeoutError:
            logger.warning(f"[{group.label}] Query {query!r} timed out after {query_timeout:.0f}s")
            failures.append(StageFailure(item=item, reason=f"Query timed out after {query_timeout:.0f}s", timed_out=True))
            continue
        except Exception as e:
            logger.error(f"[{group.label}] Query {query!r} failed: {e}")
            failures.append(StageFailure(item=item, reason=str(e)))
            continue

        found: list[Candidate] = []
        for record in raw or []:
            if not isinstance(record, dict):
                continue
            try:
                found.append(Candidate.from_raw(record, group.language, group.region))
            except ValidationError as e:
                name = record.get("title") or record.get("name")
                logger.warning(f"[{group.label}] Skipping malformed record {name!r}: {e.error_count()} invalid fields")
        logger.info(f"[{group.label}] Query {query!r} returned {len(found)} candidates")
        candidates.extend(found)

    if group.queries and len(failures) == len(group.queries):
        raise GroupSearchError(group, failures)
    return candidates, failures


async def search_candidates(
    provider: SearchProvider,
    plan: list[QuerySpec],
    result_count: int,
    *,
    search_buffer: int = 30,
    query_timeout: float = 600.0,
    fanout_timeout: float = 900.0,
    inter_query_delay: float = 1.0,
) -> StageOutcome[list[Candidate]]:
    """Run every locale group concurrently and settle all of them.

    A failed or timed-out group is reported as a failure of a PartialSuccess;
    the stage is Fatal only when no group produced a result. Candidates keep
    the group order of the plan so aggregation is deterministic.
    """
    groups = group_by_locale(plan)
    if not groups:
        return Success([])

    max_items = per_query_limit(search_buffer, len(plan), result_count)
    logger.info(f"Searching {len(plan)} queries in {len(groups)} locale groups, {max_items} items per query")

    tasks = {
        asyncio.create_task(
            _search_group(provider, group, max_items, query_timeout, inter_query_delay),
            name=f"search-{group.label}",
        ): group
        for group in groups
    }
    try:
        _, pending = await asyncio.wait(tasks, timeout=fanout_timeout)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    candidates: list[Candidate] = []
    failures: list[StageFailure] = []
    failed_groups = 0
    for task, group in tasks.items():
        if task in pending:
            logger.warning(f"[{group.label}] Group did not finish within the {fanout_timeout:.0f}s fan-out timeout")
            failures.append(StageFailure(item=group.label, reason=f"Fan-out timed out after {fanout_timeout:.0f}s", timed_out=True))
            failed_groups += 1
            continue

        error = task.exception()
        if error is None:
            found, partial = task.result()
            candidates.extend(found)
            failures.extend(partial)
            logger.info(f"[{group.label}] Group completed with {len(found)} candidates")
        elif isinstance(error, GroupSearchError):
            logger.error(f"[{group.label}] Group failed: {error}")
            failures.extend(error.failures)
            failed_groups += 1
        else:
            logger.error(f"[{group.label}] Group crashed: {error}")
            failures.append(StageFailure(item=group.label, reason=str(error)))
            failed_groups += 1

    if failed_groups == len(groups):
        reasons = "; ".join(f"{f.item}: {f.reason}" for f in failures)
        error_cls = StageTimeoutError if all(f.timed_out for f in failures) else CollaboratorError
        return Fatal(error_cls(f"Candidate search failed for every query group ({reasons})"))

    if failed_groups:
        logger.warning(f"{failed_groups} of {len(groups)} query groups failed; continuing with {len(candidates)} candidates")
    if failures:
        return PartialSuccess(candidates, failures)
    return Success(candidates)
