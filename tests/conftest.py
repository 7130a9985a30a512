"""Pytest configuration and fixtures for leadflow tests."""

import asyncio
from typing import Any

import pytest

from leadflow.clients.base import SearchRequest
from leadflow.config import PipelineSettings
from leadflow.tasks.store import TaskStore


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: End-to-end tests requiring real API keys")
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def store(tmp_path) -> TaskStore:
    task_store = TaskStore(db_path=tmp_path / "tasks.db")
    await task_store.initialize()
    return task_store


@pytest.fixture
def fast_pipeline() -> PipelineSettings:
    """Pipeline settings without inter-query pauses."""
    return PipelineSettings(inter_query_delay=0, query_timeout=5, fanout_timeout=10)


class FakeQueryGenerator:
    def __init__(self, response: Any = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[str] = []

    async def generate(self, text: str) -> Any:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.response if self.response is not None else [text]


class FakeSearchProvider:
    """Serves records per (language, region); a locale mapped to an exception raises it."""

    def __init__(self, by_locale: dict[tuple[str, str], Any] | None = None, delay: float = 0):
        self.by_locale = by_locale or {}
        self.delay = delay
        self.requests: list[SearchRequest] = []

    async def search(self, request: SearchRequest) -> list[dict[str, Any]]:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.by_locale.get((request.language, request.region), [])
        if isinstance(result, Exception):
            raise result
        return result


class FakeEnrichmentProvider:
    """Returns the records given per URL; a configured error fails the whole call."""

    def __init__(self, by_url: dict[str, dict[str, Any]] | None = None, error: Exception | None = None, delay: float = 0):
        self.by_url = by_url or {}
        self.error = error
        self.delay = delay
        self.calls: list[list[str]] = []

    async def enrich(self, urls: list[str]) -> list[dict[str, Any]]:
        self.calls.append(list(urls))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [{"url": url, **self.by_url[url]} for url in urls if url in self.by_url]


class FailingProvider:
    """Every call raises, used to drive every stage into failure."""

    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    async def generate(self, text: str) -> Any:
        self.calls += 1
        raise self.error

    async def search(self, request: SearchRequest) -> list[dict[str, Any]]:
        self.calls += 1
        raise self.error

    async def enrich(self, urls: list[str]) -> list[dict[str, Any]]:
        self.calls += 1
        raise self.error


@pytest.fixture
def fakes():
    """Access to the fake provider classes."""

    class _Fakes:
        QueryGenerator = FakeQueryGenerator
        SearchProvider = FakeSearchProvider
        EnrichmentProvider = FakeEnrichmentProvider
        Failing = FailingProvider

    return _Fakes
