"""Query expansion: normalize provider output into a capped, deduplicated query plan."""

import logging
from typing import Any

from ..clients.base import QueryGenerator
from ..exceptions import CollaboratorError
from .models import QueryGroup, QuerySpec
from .outcome import PartialSuccess, StageFailure, StageOutcome, Success

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"
DEFAULT_REGION = "US"


def _locale(group: dict[str, Any]) -> tuple[str, str]:
    language = str(group.get("language") or DEFAULT_LANGUAGE).strip().lower() or DEFAULT_LANGUAGE
    region = str(group.get("region") or DEFAULT_REGION).strip().upper() or DEFAULT_REGION
    return language, region


def normalize_query_response(response: Any, max_queries: int = 3) -> list[QuerySpec]:
    """Flatten any accepted response shape into an ordered list of unique queries.

    Accepted shapes:
    - ``["q1", "q2"]``: flat list, default locale
    - ``[{"queries": [...], "language": "ar", "region": "AE"}, ...]``: language groups
    - ``{"queries": [...], "language": ..., "region": ...}``: a single group

    Queries are compared case-insensitively with whitespace collapsed; the first
    occurrence wins and keeps its locale.

    Raises:
        CollaboratorError: If the response holds no usable query.
    """
    if isinstance(response, dict):
        groups: list[Any] = [response]
    elif isinstance(response, list):
        groups = response
    else:
        raise CollaboratorError(f"Invalid query generation response type: {type(response).__name__}")

    plan: list[QuerySpec] = []
    seen: set[str] = set()
    for group in groups:
        if isinstance(group, str):
            queries: Any = [group]
            language, region = DEFAULT_LANGUAGE, DEFAULT_REGION
        elif isinstance(group, dict):
            queries = group.get("queries")
            if isinstance(queries, str):
                queries = [queries]
            language, region = _locale(group)
        else:
            continue
        if not isinstance(queries, list):
            continue

        for query in queries:
            if not isinstance(query, str):
                continue
            text = " ".join(query.split())
            key = text.casefold()
            if not text or key in seen:
                if text:
                    logger.debug(f"Skipping duplicate query: {text!r}")
                continue
            seen.add(key)
            plan.append(QuerySpec(query=text, language=language, region=region))

    if not plan:
        raise CollaboratorError("Query generation returned no usable queries")
    return plan[:max_queries]


def group_by_locale(plan: list[QuerySpec]) -> list[QueryGroup]:
    """Group queries by (language, region), keeping first-seen order."""
    groups: dict[tuple[str, str], QueryGroup] = {}
    for spec in plan:
        key = (spec.language, spec.region)
        if key not in groups:
            groups[key] = QueryGroup(language=spec.language, region=spec.region)
        groups[key].queries.append(spec.query)
    return list(groups.values())


async def generate_query_plan(
    provider: QueryGenerator,
    text: str,
    max_queries: int = 3,
) -> StageOutcome[list[QuerySpec]]:
    """Ask the provider for query variants, falling back to the raw request text."""
    try:
        response = await provider.generate(text)
        plan = normalize_query_response(response, max_queries)
    except Exception as e:
        logger.warning(f"Query generation failed, searching with the original request: {e}")
        fallback = [QuerySpec(query=" ".join(text.split()), language=DEFAULT_LANGUAGE, region=DEFAULT_REGION)]
        return PartialSuccess(fallback, [StageFailure(item="query-generation", reason=str(e))])

    logger.info(f"Query plan: {len(plan)} queries across {len(group_by_locale(plan))} locales")
    return Success(plan)
