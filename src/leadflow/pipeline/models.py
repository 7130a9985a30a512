"""Data models passed between pipeline stages."""

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class QuerySpec:
    """One expanded search query and the locale it targets."""

    query: str
    language: str = "en"
    region: str = "US"


@dataclass
class QueryGroup:
    """Queries sharing a (language, region) locale; searched sequentially."""

    language: str
    region: str
    queries: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.language}/{self.region}"


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(raw: dict[str, Any], *keys: str) -> Any:
    """Like _first, but numbers become strings. Other types are left for validation to reject."""
    value = _first(raw, *keys)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class Candidate(BaseModel):
    """A Search Provider record reduced to the fields the pipeline keeps."""

    name: str
    website: str | None = None
    canonical_link: str | None = None
    address: str | None = None
    description: str | None = None
    rating: float | None = None
    reviews_count: int | None = None
    phone: str | None = None
    category: str | None = None
    language: str | None = None
    region: str | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any], language: str | None = None, region: str | None = None) -> "Candidate":
        """Normalize a provider record; providers disagree on field names."""
        category = _text(raw, "category", "categoryName")
        if category is None and isinstance(raw.get("categories"), list) and raw["categories"]:
            category = str(raw["categories"][0])
        return cls(
            name=str(_first(raw, "title", "name") or "Unknown organization"),
            website=_text(raw, "website", "url", "link"),
            address=_text(raw, "address"),
            description=_text(raw, "description"),
            rating=_as_float(_first(raw, "rating", "totalScore")),
            reviews_count=_as_int(_first(raw, "reviewsCount", "reviews_count", "reviews")),
            phone=_text(raw, "phone", "phoneUnformatted"),
            category=category,
            language=language,
            region=region,
        )


class EnrichmentRecord(BaseModel):
    """Contact details extracted for one URL."""

    url: str
    title: str | None = None
    email: str | None = None
    all_emails: list[str] = Field(default_factory=list)
    description: str | None = None
    country: str | None = None
    phone: str | None = None
    error: str | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "EnrichmentRecord | None":
        url = _first(raw, "url", "website")
        if not url:
            return None
        emails = raw.get("allEmails") or raw.get("all_emails") or []
        return cls(
            url=str(url),
            title=_text(raw, "title", "organizationName"),
            email=_text(raw, "email"),
            all_emails=[str(e) for e in emails if e] if isinstance(emails, list) else [],
            description=_text(raw, "description"),
            country=_text(raw, "country"),
            phone=_text(raw, "phone"),
            error=_text(raw, "scrapingError", "error"),
        )
