"""External collaborators: query generation, candidate search and detail enrichment."""

from .apify import ApifyClient
from .base import EnrichmentProvider, QueryGenerator, SearchProvider, SearchRequest

__all__ = ["ApifyClient", "EnrichmentProvider", "QueryGenerator", "SearchProvider", "SearchRequest"]
