"""Aggregation: drop unlinkable candidates and deduplicate by canonical link."""

import logging

from .links import canonical_link
from .models import Candidate

logger = logging.getLogger(__name__)


def aggregate_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """Return unique candidates keyed by canonical link, first occurrence wins.

    Running the result through this function again returns it unchanged.
    """
    seen: set[str] = set()
    unique: list[Candidate] = []
    skipped = 0
    duplicates = 0

    for candidate in candidates:
        key = canonical_link(candidate.website)
        if key is None:
            skipped += 1
            continue
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        unique.append(candidate.model_copy(update={"canonical_link": key}))

    logger.info(
        f"Aggregated {len(candidates)} candidates: {len(unique)} unique, "
        f"{duplicates} duplicates, {skipped} without a usable website"
    )
    return unique
