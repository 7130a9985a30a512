"""Provider protocols the pipeline depends on."""

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class SearchRequest:
    """Input of a Search Provider call."""

    query: str
    language: str
    region: str
    max_items: int


@runtime_checkable
class QueryGenerator(Protocol):
    """Expands free text into query variants.

    Returns a flat list of strings, a list of ``{queries, language, region}``
    groups, or a single such group.
    """

    async def generate(self, text: str) -> Any: ...


@runtime_checkable
class SearchProvider(Protocol):
    """Returns raw candidate records, each with at least a name and a website."""

    async def search(self, request: SearchRequest) -> list[dict[str, Any]]: ...


@runtime_checkable
class EnrichmentProvider(Protocol):
    """Returns one contact record per URL it managed to visit."""

    async def enrich(self, urls: list[str]) -> list[dict[str, Any]]: ...
