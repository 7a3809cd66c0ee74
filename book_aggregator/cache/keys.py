"""Cache key construction for records and search results."""

from __future__ import annotations

import hashlib
from typing import Any, Mapping, Optional

from book_aggregator.catalog.types import SearchPage

BOOK_PREFIX = "book:"
SEARCH_PREFIX = "search:"


def book_key(record_id: str) -> str:
    return f"{BOOK_PREFIX}{record_id}"


def normalize_search_key(
    query: str,
    page: SearchPage,
    filters: Optional[Mapping[str, Any]] = None,
    sort: Optional[str] = None,
) -> str:
    """Build the composite key for a search request.

    The query is trimmed, lower-cased and whitespace-collapsed; filters are
    sorted by name and empty filters dropped, so equivalent requests share a
    key.
    """
    normalized_query = " ".join(query.lower().split())
    parts = [normalized_query, str(page.start), str(page.size)]
    for name in sorted(filters or {}):
        value = (filters or {})[name]
        if value is None or value == "":
            continue
        parts.append(f"{name.lower()}={str(value).strip().lower()}")
    parts.append((sort or "default").strip().lower())
    return "|".join(parts)


def search_key(
    query: str,
    page: SearchPage,
    filters: Optional[Mapping[str, Any]] = None,
    sort: Optional[str] = None,
) -> str:
    """Return the storage key for a search, hashed to keep keys short."""
    digest = hashlib.sha256(normalize_search_key(query, page, filters, sort).encode("utf-8"))
    return f"{SEARCH_PREFIX}{digest.hexdigest()[:32]}"


__all__ = ["BOOK_PREFIX", "SEARCH_PREFIX", "book_key", "normalize_search_key", "search_key"]
