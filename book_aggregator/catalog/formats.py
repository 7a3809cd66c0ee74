"""Structural classification and flattening of provider payloads.

Every supported payload shape has one flatten function registered in
``FLATTENERS``. A flatten function turns the raw payload into a mapping keyed
by :class:`~book_aggregator.catalog.types.CanonicalRecord` field names and
never returns empty values, so the merger can treat every key as a real
contribution.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from book_aggregator import logging_manager as log_mgr

from .errors import FormatError
from .identifiers import is_canonical_id, normalize_isbn10, normalize_isbn13
from .types import (
    FORMAT_SOURCES,
    MERGEABLE_FIELDS,
    ProviderSource,
    SourceDocument,
    SourceFormat,
)

logger = log_mgr.get_logger().getChild("catalog.formats")

# Highest resolution first.
COVER_PRIORITY: tuple[str, ...] = (
    "extraLarge",
    "large",
    "medium",
    "small",
    "thumbnail",
    "smallThumbnail",
)
COVER_RESOLUTION: Dict[str, int] = {
    label: len(COVER_PRIORITY) - index for index, label in enumerate(COVER_PRIORITY)
}
OPENLIBRARY_COVER_URL = "https://covers.openlibrary.org/b/id/{cover_id}-L.jpg"

# camelCase keys written by earlier canonical documents.
_CANONICAL_ALIASES: Dict[str, str] = {
    "publishedDate": "published_date",
    "pageCount": "page_count",
    "averageRating": "average_rating",
    "ratingsCount": "ratings_count",
    "maturityRating": "maturity_rating",
    "coverImageUrl": "cover_url",
    "coverUrl": "cover_url",
    "coverResolution": "cover_resolution",
    "infoLink": "info_link",
    "previewLink": "preview_link",
    "purchaseLink": "purchase_link",
    "webReaderLink": "web_reader_link",
    "listPrice": "list_price",
    "currencyCode": "currency_code",
    "isEbook": "is_ebook",
    "publicDomain": "public_domain",
    "otherEditions": "other_editions",
    "recommendationIds": "recommendation_ids",
    "coverImages": "cover_images",
    "externalIds": "external_ids",
    "isbn_13": "isbn13",
    "isbn_10": "isbn10",
}
_VOLATILE_METADATA = frozenset({"lastUpdated", "processedAt", "last_updated", "processed_at"})


def _text(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _names(values: Any) -> List[str]:
    """Return clean strings from a list of strings or ``{"name": ...}`` entries."""
    if isinstance(values, (str, Mapping)):
        values = [values]
    if not isinstance(values, Iterable):
        return []
    names: List[str] = []
    for entry in values:
        if isinstance(entry, Mapping):
            entry = entry.get("name")
        name = _text(entry)
        if name and name not in names:
            names.append(name)
    return names


def _first(values: Any) -> Any:
    if isinstance(values, list) and values:
        return values[0]
    return None


def _compact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if value not in (None, "", [], {})}


def classify(payload: Any) -> SourceFormat:
    """Return the structural format of ``payload``."""

    if not isinstance(payload, Mapping):
        return SourceFormat.UNKNOWN

    volume_info = payload.get("volumeInfo")
    kind = payload.get("kind")
    if isinstance(volume_info, Mapping):
        if isinstance(kind, str) and kind.startswith("books#"):
            return SourceFormat.PRIMARY_PROVIDER
        if payload.get("id"):
            return SourceFormat.PRIMARY_PROVIDER

    key = payload.get("key")
    if isinstance(key, str) and key.startswith("/books/"):
        return SourceFormat.OPEN_CATALOG_PROVIDER
    if any(isinstance(payload.get(name), list) for name in ("works", "isbn_10", "isbn_13")):
        return SourceFormat.OPEN_CATALOG_PROVIDER

    if payload.get("isbns") and payload.get("rank") is not None:
        return SourceFormat.BESTSELLER_PROVIDER
    if payload.get("list_name") or payload.get("weeks_on_list") is not None:
        return SourceFormat.BESTSELLER_PROVIDER
    if payload.get("primary_isbn13") and payload.get("rank") is not None:
        return SourceFormat.BESTSELLER_PROVIDER

    if isinstance(payload.get("_metadata"), Mapping):
        return SourceFormat.ALREADY_CANONICAL
    if payload.get("id") and payload.get("title") and volume_info is None and key is None:
        return SourceFormat.ALREADY_CANONICAL

    return SourceFormat.UNKNOWN


def _best_cover(image_links: Any) -> tuple[Optional[str], Optional[int], Dict[str, str]]:
    if not isinstance(image_links, Mapping):
        return None, None, {}
    images = {
        label: url
        for label in COVER_PRIORITY
        if (url := _text(image_links.get(label))) is not None
    }
    for label in COVER_PRIORITY:
        if label in images:
            return images[label], COVER_RESOLUTION[label], images
    return None, None, images


def flatten_primary(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a primary-provider volume (``volumeInfo``/``saleInfo``/``accessInfo``)."""
    volume = payload.get("volumeInfo") or {}
    sale = payload.get("saleInfo") or {}
    access = payload.get("accessInfo") or {}
    list_price = sale.get("listPrice") or {}

    isbn13 = isbn10 = None
    for identifier in volume.get("industryIdentifiers") or []:
        if not isinstance(identifier, Mapping):
            continue
        if identifier.get("type") == "ISBN_13":
            isbn13 = isbn13 or normalize_isbn13(identifier.get("identifier"))
        elif identifier.get("type") == "ISBN_10":
            isbn10 = isbn10 or normalize_isbn10(identifier.get("identifier"))

    cover_url, cover_resolution, cover_images = _best_cover(volume.get("imageLinks"))
    volume_id = _text(payload.get("id"))

    return _compact(
        {
            "title": _text(volume.get("title")),
            "subtitle": _text(volume.get("subtitle")),
            "authors": _names(volume.get("authors")),
            "description": _text(volume.get("description")),
            "categories": _names(volume.get("categories")),
            "publisher": _text(volume.get("publisher")),
            "published_date": _text(volume.get("publishedDate")),
            "language": _text(volume.get("language")),
            "page_count": _int(volume.get("pageCount")),
            "average_rating": _float(volume.get("averageRating")),
            "ratings_count": _int(volume.get("ratingsCount")),
            "maturity_rating": _text(volume.get("maturityRating")),
            "cover_url": cover_url,
            "cover_resolution": cover_resolution,
            "cover_images": cover_images,
            "info_link": _text(volume.get("infoLink")),
            "preview_link": _text(volume.get("previewLink")),
            "purchase_link": _text(sale.get("buyLink")),
            "saleability": _text(sale.get("saleability")),
            "is_ebook": _bool(sale.get("isEbook")),
            "list_price": _float(list_price.get("amount")) if isinstance(list_price, Mapping) else None,
            "currency_code": _text(list_price.get("currencyCode")) if isinstance(list_price, Mapping) else None,
            "public_domain": _bool(access.get("publicDomain")),
            "text_to_speech_permission": _text(access.get("textToSpeechPermission")),
            "web_reader_link": _text(access.get("webReaderLink")),
            "isbn13": isbn13,
            "isbn10": isbn10,
            "external_ids": {ProviderSource.GOOGLE_BOOKS.value: volume_id} if volume_id else {},
        }
    )


def flatten_open_catalog(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten an open-catalog edition record."""
    description = payload.get("description")
    if isinstance(description, Mapping):
        description = description.get("value")

    cover_id = _int(_first(payload.get("covers")))
    cover_url = OPENLIBRARY_COVER_URL.format(cover_id=cover_id) if cover_id and cover_id > 0 else None

    language = _first(payload.get("languages"))
    if isinstance(language, Mapping):
        language = _text(language.get("key"))
        language = language.rsplit("/", 1)[-1] if language else None

    external_ids: Dict[str, str] = {}
    edition_key = _text(payload.get("key"))
    if edition_key:
        external_ids[ProviderSource.OPENLIBRARY.value] = edition_key
    work = _first(payload.get("works"))
    if isinstance(work, Mapping) and _text(work.get("key")):
        external_ids["openlibrary_work"] = _text(work.get("key"))

    return _compact(
        {
            "title": _text(payload.get("title")),
            "subtitle": _text(payload.get("subtitle")),
            "authors": _names(payload.get("authors")),
            "description": _text(description),
            "isbn13": normalize_isbn13(_first(payload.get("isbn_13"))),
            "isbn10": normalize_isbn10(_first(payload.get("isbn_10"))),
            "cover_url": cover_url,
            "cover_resolution": COVER_RESOLUTION["large"] if cover_url else None,
            "cover_images": {"large": cover_url} if cover_url else {},
            "published_date": _text(payload.get("publish_date")),
            "publisher": _first(_names(payload.get("publishers"))),
            "page_count": _int(payload.get("number_of_pages")),
            "categories": _names(payload.get("subjects")),
            "language": _text(language),
            "external_ids": external_ids,
        }
    )


def flatten_bestseller(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a bestseller-list entry, including its rank group."""
    isbn13 = normalize_isbn13(payload.get("primary_isbn13"))
    isbn10 = normalize_isbn10(payload.get("primary_isbn10"))
    for entry in payload.get("isbns") or []:
        if not isinstance(entry, Mapping):
            continue
        isbn13 = isbn13 or normalize_isbn13(entry.get("isbn13"))
        isbn10 = isbn10 or normalize_isbn10(entry.get("isbn10"))

    cover_url = _text(payload.get("book_image"))
    rank = _int(payload.get("rank"))

    return _compact(
        {
            "title": _text(payload.get("title")),
            "authors": _names(payload.get("author")),
            "description": _text(payload.get("description")),
            "publisher": _text(payload.get("publisher")),
            "isbn13": isbn13,
            "isbn10": isbn10,
            "cover_url": cover_url,
            "cover_resolution": COVER_RESOLUTION["medium"] if cover_url else None,
            "purchase_link": _text(payload.get("amazon_product_url")),
            "review_link": _text(payload.get("book_review_link")),
            "bestseller_list": _text(payload.get("list_name")) or _text(payload.get("display_name")),
            "bestseller_rank": rank,
            "bestseller_weeks_on_list": _int(payload.get("weeks_on_list")),
            "bestseller_date": _text(payload.get("bestsellers_date"))
            or _text(payload.get("published_date")),
            "qualifiers": {"nyt_bestseller": True} if rank is not None else {},
        }
    )


def flatten_canonical(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a document that already has the canonical shape."""
    fields: Dict[str, Any] = {}
    for key, value in payload.items():
        name = _CANONICAL_ALIASES.get(key, key)
        if name in MERGEABLE_FIELDS and name not in fields:
            fields[name] = value

    for name in ("isbn13", "isbn10"):
        if name in fields:
            normalizer = normalize_isbn13 if name == "isbn13" else normalize_isbn10
            fields[name] = normalizer(fields[name])
    if "authors" in fields:
        fields["authors"] = _names(fields["authors"])
    if "categories" in fields:
        fields["categories"] = _names(fields["categories"])

    google_id = _text(payload.get("googleBooksId")) or _text(payload.get("google_books_id"))
    record_id = _text(payload.get("id"))
    if not google_id and record_id and not is_canonical_id(record_id):
        google_id = record_id
    external_ids = dict(fields.get("external_ids") or {})
    if google_id:
        external_ids.setdefault(ProviderSource.GOOGLE_BOOKS.value, google_id)
    fields["external_ids"] = external_ids

    metadata = payload.get("_metadata")
    if isinstance(metadata, Mapping):
        merged = dict(fields.get("metadata") or {})
        merged.update(
            {key: value for key, value in metadata.items() if key not in _VOLATILE_METADATA}
        )
        fields["metadata"] = merged
    return _compact(fields)


def flatten_unknown(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep recognised canonical keys and flag the record for review."""
    fields = flatten_canonical(payload)
    if "isbn13" not in fields and "isbn10" not in fields:
        isbn = payload.get("isbn")
        fields.update(_compact({"isbn13": normalize_isbn13(isbn), "isbn10": normalize_isbn10(isbn)}))
    metadata = dict(fields.get("metadata") or {})
    metadata["needs_review"] = True
    fields["metadata"] = metadata
    return fields


FLATTENERS: Dict[SourceFormat, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
    SourceFormat.PRIMARY_PROVIDER: flatten_primary,
    SourceFormat.OPEN_CATALOG_PROVIDER: flatten_open_catalog,
    SourceFormat.BESTSELLER_PROVIDER: flatten_bestseller,
    SourceFormat.ALREADY_CANONICAL: flatten_canonical,
    SourceFormat.UNKNOWN: flatten_unknown,
}


def flatten(payload: Mapping[str, Any], fmt: SourceFormat) -> Dict[str, Any]:
    """Flatten ``payload`` with the function registered for ``fmt``."""

    return FLATTENERS[fmt](payload)


def extract_document(payload: Any, *, source_key: Optional[str] = None) -> SourceDocument:
    """Classify and flatten one payload into a :class:`SourceDocument`."""

    if not isinstance(payload, Mapping):
        raise FormatError(f"expected a JSON object, got {type(payload).__name__}")
    payload = unwrap_preprocessed(payload)
    fmt = classify(payload)
    fields = flatten(payload, fmt)
    source = FORMAT_SOURCES[fmt]

    external_ids = fields.get("external_ids") or {}
    provider_id = external_ids.get(ProviderSource.GOOGLE_BOOKS.value)
    canonical_id = None
    if fmt is SourceFormat.ALREADY_CANONICAL and is_canonical_id(payload.get("id")):
        canonical_id = payload["id"].strip().lower()

    return SourceDocument(
        payload=payload,
        format=fmt,
        fields=fields,
        source=source,
        source_key=source_key,
        isbn13=fields.get("isbn13"),
        isbn10=fields.get("isbn10"),
        provider_id=provider_id,
        canonical_id=canonical_id,
    )


def split_payload(payload: Any) -> List[Mapping[str, Any]]:
    """Split list-shaped responses into individual book payloads.

    Handles bare JSON arrays, primary-provider search responses (``items``)
    and bestseller list or overview responses (``results.books`` /
    ``results.lists[].books``). Any other object is returned as is.
    """

    if isinstance(payload, list):
        entries: List[Mapping[str, Any]] = []
        for item in payload:
            entries.extend(split_payload(item))
        return entries
    if not isinstance(payload, Mapping):
        raise FormatError(f"expected a JSON object or array, got {type(payload).__name__}")

    kind = payload.get("kind")
    if kind == "books#volumes":
        return [item for item in payload.get("items") or [] if isinstance(item, Mapping)]

    results = payload.get("results")
    if isinstance(results, Mapping):
        lists = results.get("lists")
        if isinstance(lists, list):
            entries = []
            for book_list in lists:
                if isinstance(book_list, Mapping):
                    entries.extend(_bestseller_entries(book_list, results))
            return entries
        if isinstance(results.get("books"), list):
            return _bestseller_entries(results, results)
    return [unwrap_preprocessed(payload)]


def unwrap_preprocessed(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the provider volume stored inside an earlier export's wrapper.

    Those wrappers repeat the volume id as their title and keep the untouched
    response, sometimes JSON-encoded twice, under ``rawJsonResponse``. Anything
    that does not unwrap to a primary-provider volume is returned unchanged.
    """

    raw = payload.get("rawJsonResponse")
    if not raw or "volumeInfo" in payload or payload.get("title") != payload.get("id"):
        return payload
    try:
        inner = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(inner, str):
            inner = json.loads(inner)
    except ValueError as exc:
        logger.warning(
            "Could not unwrap rawJsonResponse of %s: %s",
            payload.get("id"),
            exc,
            extra={"event": "catalog.formats.unwrap_failed", "console_suppress": True},
        )
        return payload
    if isinstance(inner, Mapping) and (
        isinstance(inner.get("volumeInfo"), Mapping) or inner.get("kind") == "books#volume"
    ):
        return inner
    return payload


def entry_key(entry: Mapping[str, Any]) -> str:
    """Key used to drop repeated entries of one payload.

    Primary-provider volumes match on their first ISBN, then on title and
    first author; other shapes only match exact duplicates.
    """

    volume_info = entry.get("volumeInfo")
    if not isinstance(volume_info, Mapping):
        return json.dumps(entry, sort_keys=True, default=str)
    for identifier in volume_info.get("industryIdentifiers") or []:
        if not isinstance(identifier, Mapping):
            continue
        if identifier.get("type") == "ISBN_13":
            return f"isbn13:{identifier.get('identifier')}"
        if identifier.get("type") == "ISBN_10":
            return f"isbn10:{identifier.get('identifier')}"
    authors = _names(volume_info.get("authors"))
    return f"{volume_info.get('title') or ''}:{authors[0] if authors else ''}".lower()


def dedupe_entries(entries: List[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Keep the first of every group of entries sharing an :func:`entry_key`."""

    if len(entries) <= 1:
        return list(entries)
    seen: set[str] = set()
    unique: List[Mapping[str, Any]] = []
    for entry in entries:
        key = entry_key(entry)
        if key in seen:
            logger.debug(
                "Dropping duplicate entry %s",
                key,
                extra={"event": "catalog.formats.duplicate", "console_suppress": True},
            )
            continue
        seen.add(key)
        unique.append(entry)
    return unique


def _bestseller_entries(book_list: Mapping[str, Any], results: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    list_name = book_list.get("list_name") or book_list.get("display_name")
    list_date = results.get("bestsellers_date") or results.get("published_date")
    entries: List[Mapping[str, Any]] = []
    for book in book_list.get("books") or []:
        if not isinstance(book, Mapping):
            continue
        entry = dict(book)
        if list_name:
            entry.setdefault("list_name", list_name)
        if list_date:
            entry.setdefault("bestsellers_date", list_date)
        entries.append(entry)
    return entries


__all__ = [
    "COVER_PRIORITY",
    "COVER_RESOLUTION",
    "FLATTENERS",
    "classify",
    "dedupe_entries",
    "entry_key",
    "extract_document",
    "flatten",
    "flatten_bestseller",
    "flatten_canonical",
    "flatten_open_catalog",
    "flatten_primary",
    "flatten_unknown",
    "split_payload",
    "unwrap_preprocessed",
]
