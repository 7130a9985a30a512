"""Contact filtering and relevance ranking of merged results."""

import logging
import re

from ..tasks.models import LeadResult

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_KEYWORD_SPLIT = re.compile(r"[,\s]+")

KEYWORD_POINTS = 10
EMAIL_POINTS = 20
PHONE_POINTS = 5
RATING_POINTS = 5
REVIEWS_POINTS = 3
DESCRIPTION_POINTS = 2


def has_contact_channel(result: LeadResult, accept_phone: bool = False) -> bool:
    """True if the result exposes a way to reach the organization."""
    if result.email or any(result.all_emails):
        return True
    if result.description and EMAIL_PATTERN.search(result.description):
        return True
    return accept_phone and bool(result.phone)


def filter_contactable(results: list[LeadResult], accept_phone: bool = False) -> list[LeadResult]:
    kept = [r for r in results if has_contact_channel(r, accept_phone)]
    logger.info(f"Contact filter kept {len(kept)} of {len(results)} results")
    return kept


def extract_keywords(query: str) -> list[str]:
    """Distinct lower-cased words longer than two characters, in query order."""
    keywords: list[str] = []
    for word in _KEYWORD_SPLIT.split(query.lower()):
        word = word.strip()
        if len(word) > 2 and word not in keywords:
            keywords.append(word)
    return keywords


def relevance_score(result: LeadResult, keywords: list[str]) -> int:
    haystack = " ".join(
        part or "" for part in (result.name, result.description, result.address, result.category)
    ).lower()

    score = KEYWORD_POINTS * sum(1 for keyword in keywords if keyword in haystack)
    if result.email:
        score += EMAIL_POINTS
    if result.phone:
        score += PHONE_POINTS
    if result.rating is not None and result.rating > 4:
        score += RATING_POINTS
    if result.reviews_count is not None and result.reviews_count > 10:
        score += REVIEWS_POINTS
    if result.description and len(result.description) > 50:
        score += DESCRIPTION_POINTS
    return score


def rank_results(results: list[LeadResult], query: str, limit: int | None = None) -> list[LeadResult]:
    """Score, sort by descending score (stable on ties) and truncate to limit."""
    keywords = extract_keywords(query)
    scored = [r.model_copy(update={"relevance_score": relevance_score(r, keywords)}) for r in results]
    ranked = sorted(scored, key=lambda r: r.relevance_score, reverse=True)
    if limit is not None:
        ranked = ranked[:limit]

    if ranked:
        top = ranked[0].relevance_score
        logger.info(f"Ranked {len(scored)} results by keywords {keywords}; kept {len(ranked)}, top score {top}")
    return ranked
