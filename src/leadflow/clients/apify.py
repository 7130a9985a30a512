"""Apify REST client: place search and website contact extraction actors."""

import asyncio
import logging
import time
from typing import Any

import httpx

from ..config import ApifySettings
from ..exceptions import CollaboratorError, StageTimeoutError
from .base import SearchRequest

logger = logging.getLogger(__name__)

TERMINAL_FAILURE_STATUSES = frozenset({"FAILED", "ABORTED", "TIMED-OUT"})

# Runs inside the web-scraper actor; returns one record per crawled page.
CONTACT_PAGE_FUNCTION = """async function pageFunction(context) {
    const $ = context.jQuery;
    const url = context.request.url;
    const emailPattern = /[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\\.[a-zA-Z]{2,}/g;
    try {
        const title = $('title').first().text().trim() || $('h1').first().text().trim();
        const mailto = $('a[href^="mailto:"]').map(function() {
            const href = $(this).attr('href');
            return href ? href.replace('mailto:', '').split('?')[0] : null;
        }).get().filter(Boolean);
        let emails = ($('body').text().match(emailPattern) || []).concat(mailto);
        emails = [...new Set(emails.map(e => e.trim().toLowerCase()))]
            .filter(e => !e.match(/\\.(png|jpg|jpeg|gif|css|js|pdf)$/i));
        const description = $('meta[name="description"]').attr('content')
            || $('meta[property="og:description"]').attr('content')
            || $('p').first().text().trim() || null;
        const country = $('meta[name="country"]').attr('content') || null;
        return {
            url: url,
            title: title || null,
            email: emails.length > 0 ? emails[0] : null,
            allEmails: emails,
            description: description ? description.substring(0, 500) : null,
            country: country,
            scrapedAt: new Date().toISOString()
        };
    } catch (error) {
        return { url: url, allEmails: [], scrapingError: error.message };
    }
}"""


class ApifyClient:
    """Search and enrichment provider backed by Apify actor runs.

    Each call starts an actor run, polls it until it reaches a terminal
    status, then downloads the run's default dataset.
    """

    def __init__(self, config: ApifySettings, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._http_client = http_client

    async def search(self, request: SearchRequest) -> list[dict[str, Any]]:
        logger.info(f"Place search: {request.query!r} ({request.language}/{request.region}, max {request.max_items})")
        run_input = {
            "searchStringsArray": [request.query],
            "maxCrawledPlacesPerSearch": request.max_items,
            "language": request.language,
            "countryCode": request.region.lower(),
            "exportPlaceUrls": False,
            "scrapeReviewsCount": 0,
            "scrapeDirectories": False,
            "scrapeImages": False,
            "includePeopleAlsoSearch": False,
        }
        return await self.run_actor(self.config.search_actor, run_input)

    async def enrich(self, urls: list[str]) -> list[dict[str, Any]]:
        if not urls:
            return []
        logger.info(f"Extracting contacts from {len(urls)} websites")
        run_input = {
            "startUrls": [{"url": url} for url in urls],
            "pageFunction": CONTACT_PAGE_FUNCTION,
            "injectJQuery": True,
            "proxyConfiguration": {"useApifyProxy": True},
            "maxRequestRetries": 3,
            "maxPagesPerCrawl": len(urls) * 3,
            "maxResultsPerCrawl": len(urls) * 3,
            "maxCrawlingDepth": 1,
            "pageFunctionTimeoutSecs": 60,
            "waitUntil": ["domcontentloaded"],
            "closeCookieModals": True,
        }
        return await self.run_actor(self.config.enrichment_actor, run_input)

    async def run_actor(self, actor: str, run_input: dict[str, Any]) -> list[dict[str, Any]]:
        """Start an actor run, wait for it and return its dataset items."""
        token = self.config.get_api_token()
        if not token:
            raise CollaboratorError("Apify API token missing. Set APIFY_TOKEN or LEADFLOW_APIFY_API_TOKEN.")

        try:
            if self._http_client is not None:
                return await self._run(self._http_client, actor, run_input)
            async with httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.config.request_timeout,
            ) as client:
                return await self._run(client, actor, run_input)
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Apify request failed for {actor}: {e}") from e

    async def _run(self, client: httpx.AsyncClient, actor: str, run_input: dict[str, Any]) -> list[dict[str, Any]]:
        response = await client.post(f"/acts/{actor}/runs", json=run_input)
        if response.is_error:
            raise CollaboratorError(f"Failed to start {actor}: {self._error_message(response)}")

        run_id = response.json()["data"]["id"]
        logger.info(f"Started actor run {run_id} ({actor})")
        dataset_id = await self._wait_for_run(client, run_id)

        items = await client.get(f"/datasets/{dataset_id}/items", headers={"Accept": "application/json"})
        if items.is_error:
            raise CollaboratorError(f"Failed to get results of run {run_id}: {self._error_message(items)}")

        payload = items.json()
        results = payload if isinstance(payload, list) else []
        logger.info(f"Actor run {run_id} returned {len(results)} items")
        return results

    async def _wait_for_run(self, client: httpx.AsyncClient, run_id: str) -> str:
        """Poll a run until it succeeds. Returns its default dataset id."""
        deadline = time.monotonic() + self.config.run_max_wait

        while time.monotonic() < deadline:
            response = await client.get(f"/actor-runs/{run_id}")
            if response.is_error:
                logger.warning(f"Error checking run {run_id} status: {self._error_message(response)}")
            else:
                data = response.json()["data"]
                status = data.get("status")
                logger.debug(f"Run {run_id} status: {status}")

                if status == "SUCCEEDED":
                    dataset_id = data.get("defaultDatasetId")
                    if not dataset_id:
                        raise CollaboratorError(f"No dataset ID found in completed run {run_id}")
                    return dataset_id

                if status in TERMINAL_FAILURE_STATUSES:
                    raise CollaboratorError(f"Run {run_id} {status}: {data.get('statusMessage') or 'Unknown error'}")

            await asyncio.sleep(self.config.run_poll_interval)

        raise StageTimeoutError(f"Run {run_id} timeout after {self.config.run_max_wait:.0f} seconds")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return response.reason_phrase or str(response.status_code)
