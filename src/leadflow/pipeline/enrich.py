"""Detail enrichment and the candidate/enrichment merge."""

import asyncio
import logging
from datetime import UTC, datetime

from pydantic import ValidationError

from ..clients.base import EnrichmentProvider
from ..tasks.models import LeadResult
from .links import canonical_link, is_http_url
from .models import Candidate, EnrichmentRecord
from .outcome import PartialSuccess, StageFailure, StageOutcome, Success

logger = logging.getLogger(__name__)

MISSING_RECORD_REASON = "No enrichment record returned for this website"


def _enrichable_urls(candidates: list[Candidate]) -> list[str]:
    urls: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        url = (candidate.website or "").strip()
        key = canonical_link(url)
        if key and key not in seen and is_http_url(url):
            seen.add(key)
            urls.append(url)
    return urls


async def fetch_enrichment(
    provider: EnrichmentProvider,
    candidates: list[Candidate],
    timeout: float | None = None,
) -> StageOutcome[dict[str, EnrichmentRecord]]:
    """Call the provider once for all links and index its records by canonical link.

    A provider-level failure or timeout degrades every link to a placeholder
    carrying the error instead of failing the task. A malformed record only
    degrades its own link.
    """
    urls = _enrichable_urls(candidates)
    if not urls:
        logger.warning("No http(s) links to enrich")
        return Success({})

    logger.info(f"Enriching {len(urls)} websites")
    try:
        raw_records = await asyncio.wait_for(provider.enrich(urls), timeout=timeout)
    except TimeoutError:
        reason = f"Enrichment timed out after {timeout:.0f}s"
        logger.error(reason)
        return _placeholders(urls, reason, timed_out=True)
    except Exception as e:
        reason = f"Enrichment failed: {e}"
        logger.error(reason)
        return _placeholders(urls, reason)

    records: dict[str, EnrichmentRecord] = {}
    malformed: dict[str, StageFailure] = {}
    for raw in raw_records or []:
        if not isinstance(raw, dict):
            continue
        try:
            record = EnrichmentRecord.from_raw(raw)
        except ValidationError as e:
            url = str(raw.get("url") or raw.get("website") or "")
            reason = f"Malformed enrichment record: {e.error_count()} invalid fields"
            logger.warning(f"{reason} for {url or 'unknown URL'}")
            key = canonical_link(url)
            if key is not None:
                malformed.setdefault(key, StageFailure(item=url, reason=reason))
                records.setdefault(key, EnrichmentRecord(url=url, error=reason))
            continue

        key = canonical_link(record.url) if record else None
        if record is None or key is None:
            continue
        # Several crawled pages may map to one site; keep the one that found an email.
        existing = records.get(key)
        if existing is None or existing.error is not None or (not existing.email and record.email):
            records[key] = record

    missing = [url for url in urls if canonical_link(url) not in records]
    # A later valid page for the same site replaces a malformed one.
    failures = [f for key, f in malformed.items() if records[key].error is not None]
    failures.extend(StageFailure(item=url, reason=MISSING_RECORD_REASON) for url in missing)
    with_email = sum(1 for r in records.values() if r.email or r.all_emails)
    logger.info(f"Enrichment returned {len(records)} records ({with_email} with email, {len(missing)} missing)")
    if failures:
        return PartialSuccess(records, failures)
    return Success(records)


def _placeholders(urls: list[str], reason: str, timed_out: bool = False) -> PartialSuccess[dict[str, EnrichmentRecord]]:
    records = {canonical_link(url) or url: EnrichmentRecord(url=url, error=reason) for url in urls}
    return PartialSuccess(records, [StageFailure(item=url, reason=reason, timed_out=timed_out) for url in urls])


def merge_results(
    candidates: list[Candidate],
    records: dict[str, EnrichmentRecord],
    scraped_at: datetime | None = None,
) -> list[LeadResult]:
    """Join each candidate 1:1 with its enrichment record by canonical link."""
    scraped_at = scraped_at or datetime.now(UTC)
    merged: list[LeadResult] = []

    for candidate in candidates:
        key = candidate.canonical_link or canonical_link(candidate.website)
        base = {
            "name": candidate.name,
            "website": candidate.website,
            "canonical_link": key,
            "address": candidate.address,
            "phone": candidate.phone,
            "category": candidate.category,
            "rating": candidate.rating,
            "reviews_count": candidate.reviews_count,
            "language": candidate.language,
            "region": candidate.region,
        }
        record = records.get(key) if key else None

        if record is not None and record.error is None:
            merged.append(
                LeadResult(
                    **{**base, "phone": candidate.phone or record.phone},
                    email=record.email,
                    all_emails=record.all_emails,
                    description=record.description or candidate.description,
                    country=record.country,
                    data_source="search_with_enrichment",
                    scraped_at=scraped_at,
                )
            )
        else:
            merged.append(
                LeadResult(
                    **base,
                    description=candidate.description,
                    data_source="search_only",
                    enrichment_error=record.error if record is not None else MISSING_RECORD_REASON,
                )
            )

    return merged


async def enrich_candidates(
    provider: EnrichmentProvider,
    candidates: list[Candidate],
    timeout: float | None = None,
) -> StageOutcome[list[LeadResult]]:
    """Fetch enrichment for all candidates and merge it in; never Fatal."""
    outcome = await fetch_enrichment(provider, candidates, timeout=timeout)
    merged = merge_results(candidates, outcome.value)
    if isinstance(outcome, PartialSuccess):
        return PartialSuccess(merged, list(outcome.failures))
    return Success(merged)
