"""Core type definitions for canonical book records."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class SourceFormat(str, Enum):
    """Structural shape of an incoming payload."""

    PRIMARY_PROVIDER = "primary_provider"
    BESTSELLER_PROVIDER = "bestseller_provider"
    OPEN_CATALOG_PROVIDER = "open_catalog_provider"
    ALREADY_CANONICAL = "already_canonical"
    UNKNOWN = "unknown"


class ProviderSource(str, Enum):
    """Provider identifiers used for provenance and external ids."""

    GOOGLE_BOOKS = "google_books"
    NYT = "nyt"
    OPENLIBRARY = "openlibrary"
    ARCHIVE = "archive"


FORMAT_SOURCES: Dict[SourceFormat, ProviderSource] = {
    SourceFormat.PRIMARY_PROVIDER: ProviderSource.GOOGLE_BOOKS,
    SourceFormat.BESTSELLER_PROVIDER: ProviderSource.NYT,
    SourceFormat.OPEN_CATALOG_PROVIDER: ProviderSource.OPENLIBRARY,
    SourceFormat.ALREADY_CANONICAL: ProviderSource.ARCHIVE,
    SourceFormat.UNKNOWN: ProviderSource.ARCHIVE,
}

# Field groups drive the merge precedence table.
SCALAR_FIELDS: tuple[str, ...] = (
    "title",
    "subtitle",
    "description",
    "publisher",
    "published_date",
    "page_count",
    "language",
    "maturity_rating",
    "average_rating",
    "ratings_count",
    "cover_url",
    "cover_resolution",
    "info_link",
    "preview_link",
    "purchase_link",
    "web_reader_link",
    "review_link",
    "list_price",
    "currency_code",
    "saleability",
    "is_ebook",
    "public_domain",
    "text_to_speech_permission",
    "bestseller_list",
    "bestseller_rank",
    "bestseller_weeks_on_list",
    "bestseller_date",
    "embedding",
)
IDENTIFIER_FIELDS: tuple[str, ...] = ("isbn13", "isbn10")
LIST_FIELDS: tuple[str, ...] = ("authors", "categories", "other_editions", "recommendation_ids")
MAP_FIELDS: tuple[str, ...] = ("cover_images", "external_ids", "qualifiers", "metadata")
MERGEABLE_FIELDS: tuple[str, ...] = SCALAR_FIELDS + IDENTIFIER_FIELDS + LIST_FIELDS + MAP_FIELDS


@dataclass(slots=True)
class CanonicalRecord:
    """Merged, provider-independent view of one physical work."""

    id: str
    title: Optional[str] = None
    subtitle: Optional[str] = None
    description: Optional[str] = None
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    page_count: Optional[int] = None
    language: Optional[str] = None
    maturity_rating: Optional[str] = None
    average_rating: Optional[float] = None
    ratings_count: Optional[int] = None
    cover_url: Optional[str] = None
    cover_resolution: Optional[int] = None
    info_link: Optional[str] = None
    preview_link: Optional[str] = None
    purchase_link: Optional[str] = None
    web_reader_link: Optional[str] = None
    review_link: Optional[str] = None
    list_price: Optional[float] = None
    currency_code: Optional[str] = None
    saleability: Optional[str] = None
    is_ebook: Optional[bool] = None
    public_domain: Optional[bool] = None
    text_to_speech_permission: Optional[str] = None
    bestseller_list: Optional[str] = None
    bestseller_rank: Optional[int] = None
    bestseller_weeks_on_list: Optional[int] = None
    bestseller_date: Optional[str] = None
    embedding: Optional[List[float]] = None
    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    other_editions: List[str] = field(default_factory=list)
    recommendation_ids: List[str] = field(default_factory=list)
    cover_images: Dict[str, str] = field(default_factory=dict)
    external_ids: Dict[str, str] = field(default_factory=dict)
    qualifiers: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    provenance: Dict[str, Dict[str, str]] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        payload: Dict[str, Any] = {}
        for item in dataclasses.fields(self):
            value = getattr(self, item.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, (list, dict)):
                value = _copy_json(value)
            payload[item.name] = value
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CanonicalRecord":
        """Deserialize from a dictionary; unknown keys are ignored."""
        known = {item.name for item in dataclasses.fields(cls)}
        kwargs = {key: _copy_json(value) for key, value in data.items() if key in known}
        last_updated = kwargs.get("last_updated")
        if isinstance(last_updated, str):
            kwargs["last_updated"] = datetime.fromisoformat(last_updated)
        if not kwargs.get("id"):
            raise ValueError("canonical record payload is missing its id")
        for name in LIST_FIELDS:
            if kwargs.get(name) is None:
                kwargs.pop(name, None)
        for name in MAP_FIELDS + ("provenance",):
            if kwargs.get(name) is None:
                kwargs.pop(name, None)
        return cls(**kwargs)

    def copy(self) -> "CanonicalRecord":
        return CanonicalRecord.from_dict(self.to_dict())


def _copy_json(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _copy_json(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_copy_json(item) for item in value]
    return value


@dataclass(slots=True)
class SourceDocument:
    """A classified and flattened provider payload ready to merge."""

    payload: Mapping[str, Any]
    format: SourceFormat
    fields: Dict[str, Any]
    source: ProviderSource
    source_key: Optional[str] = None
    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    provider_id: Optional[str] = None
    canonical_id: Optional[str] = None
    placeholder_id: Optional[str] = None

    @property
    def title(self) -> Optional[str]:
        return self.fields.get("title")

    @property
    def has_identifier(self) -> bool:
        return bool(self.isbn13 or self.isbn10 or self.provider_id)


@dataclass(frozen=True, slots=True)
class MergeOutcome:
    """Result of merging a source document into a record."""

    record: CanonicalRecord
    was_modified: bool
    changed_fields: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class LookupResult:
    """A record returned by the lookup coordinator, tagged with its tier."""

    record: CanonicalRecord
    tier: str


@dataclass(frozen=True, slots=True)
class SearchPage:
    """Pagination window for search requests."""

    start: int = 0
    size: int = 10


__all__ = [
    "CanonicalRecord",
    "FORMAT_SOURCES",
    "IDENTIFIER_FIELDS",
    "LIST_FIELDS",
    "LookupResult",
    "MAP_FIELDS",
    "MERGEABLE_FIELDS",
    "MergeOutcome",
    "ProviderSource",
    "SCALAR_FIELDS",
    "SearchPage",
    "SourceDocument",
    "SourceFormat",
]
