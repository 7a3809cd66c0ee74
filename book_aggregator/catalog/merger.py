"""Field-level merge of source documents into canonical records.

Precedence, applied in the same way for every source:

* scalars fill when the record has no value; a few have a "better" rule that
  may replace a populated value:

  - ``description``: the longer text wins
  - ``published_date``: the newer date wins
  - ``ratings_count``: the higher count wins and carries ``average_rating``
  - ``cover_url``: the higher resolution wins and carries ``cover_resolution``
  - ``bestseller_date``: the newer list date wins and carries the rank group

* ``isbn13`` / ``isbn10`` only fill when absent
* lists are replaced when the incoming list is non-empty and differs
* maps are unioned key-wise, incoming values overwrite matching keys;
  ``metadata.ingested_at`` is only refreshed when something else changed

Empty incoming values never replace anything, and a field only counts as
changed when its value actually differs, which keeps merging idempotent.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from book_aggregator import logging_manager as log_mgr

from .formats import classify, extract_document, flatten
from .identifiers import new_canonical_id
from .types import (
    IDENTIFIER_FIELDS,
    LIST_FIELDS,
    MAP_FIELDS,
    SCALAR_FIELDS,
    CanonicalRecord,
    MergeOutcome,
    SourceDocument,
    SourceFormat,
)

logger = log_mgr.get_logger().getChild("catalog.merger")

_MONTHS = {
    name: index
    for index, names in enumerate(
        (
            ("jan", "january"),
            ("feb", "february"),
            ("mar", "march"),
            ("apr", "april"),
            ("may",),
            ("jun", "june"),
            ("jul", "july"),
            ("aug", "august"),
            ("sep", "sept", "september"),
            ("oct", "october"),
            ("nov", "november"),
            ("dec", "december"),
        ),
        start=1,
    )
    for name in names
}
_ISO_DATE = re.compile(r"^(\d{4})(?:-(\d{1,2}))?(?:-(\d{1,2}))?")
_YEAR = re.compile(r"\b(\d{4})\b")
_DAY = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\b")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def date_sort_key(value: Any) -> Optional[Tuple[int, int, int]]:
    """Parse a full or partial date into ``(year, month, day)``.

    Accepts ``YYYY``, ``YYYY-MM``, ``YYYY-MM-DD`` and textual dates such as
    ``March 5, 2002``. Missing parts sort before any known value.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    match = _ISO_DATE.match(text)
    if match:
        year, month, day = match.groups()
        return int(year), int(month or 0), int(day or 0)

    year_match = _YEAR.search(text)
    if not year_match:
        return None
    month = 0
    for token in re.findall(r"[A-Za-z]+", text.lower()):
        if token in _MONTHS:
            month = _MONTHS[token]
            break
    day = 0
    remainder = text[: year_match.start()] + text[year_match.end():]
    day_match = _DAY.search(remainder)
    if month and day_match:
        day = int(day_match.group(1))
    return int(year_match.group(1)), month, day


def _longer_text(incoming: Any, existing: Any) -> bool:
    return len(str(incoming)) > len(str(existing))


def _newer_date(incoming: Any, existing: Any) -> bool:
    incoming_key = date_sort_key(incoming)
    existing_key = date_sort_key(existing)
    if incoming_key is None:
        return False
    if existing_key is None:
        return True
    return incoming_key > existing_key


def _greater_number(incoming: Any, existing: Any) -> bool:
    try:
        return float(incoming) > float(existing)
    except (TypeError, ValueError):
        return False


# leader field -> (better rule, fields carried with the leader)
_BETTER_RULES: Dict[str, Tuple[Callable[[Any, Any], bool], Tuple[str, ...]]] = {
    "description": (_longer_text, ()),
    "published_date": (_newer_date, ()),
    "ratings_count": (_greater_number, ("average_rating",)),
    "bestseller_date": (
        _newer_date,
        ("bestseller_rank", "bestseller_weeks_on_list", "bestseller_list"),
    ),
}

# Refreshed alongside a real change, never a change on their own.
_VOLATILE_METADATA: frozenset[str] = frozenset({"ingested_at"})


class DocumentMerger:
    """Classify, flatten and merge provider payloads into canonical records."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    classify = staticmethod(classify)
    flatten = staticmethod(flatten)

    def create_unified(
        self,
        payload: Any,
        *,
        source_key: Optional[str] = None,
        canonical_id: Optional[str] = None,
    ) -> SourceDocument:
        """Classify and flatten ``payload`` and stamp its ingestion metadata.

        A caller-supplied ``canonical_id`` binds the document to that record.
        Otherwise, unless the payload already carries its own id, a fresh
        time-ordered id is attached as ``placeholder_id``; it becomes the
        record id only if identity resolution has to create a new record.
        """

        document = extract_document(payload, source_key=source_key)
        metadata = dict(document.fields.get("metadata") or {})
        metadata["data_source"] = document.format.value
        if source_key:
            metadata["source_key"] = source_key
        metadata["ingested_at"] = self._clock().isoformat()
        document.fields["metadata"] = metadata
        if canonical_id:
            document.canonical_id = canonical_id
        elif document.canonical_id is None:
            document.placeholder_id = new_canonical_id()
        if document.format is SourceFormat.UNKNOWN:
            logger.warning(
                "Unrecognised payload shape; keeping known fields for review",
                extra={
                    "event": "catalog.merge.unknown_format",
                    "object_key": source_key,
                    "console_suppress": True,
                },
            )
        return document

    def merge(
        self,
        existing: CanonicalRecord,
        incoming: Union[SourceDocument, Mapping[str, Any]],
        *,
        source: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MergeOutcome:
        """Merge ``incoming`` into a copy of ``existing``.

        ``incoming`` is either a :class:`SourceDocument` or a flattened field
        mapping. ``existing`` is never mutated.
        """

        if isinstance(incoming, SourceDocument):
            fields: Mapping[str, Any] = incoming.fields
            source = source or incoming.source.value
        else:
            fields = incoming
        source = source or "unknown"
        timestamp = now or self._clock()

        record = existing.copy()
        changed: List[str] = []

        handled: set[str] = set()
        for leader, (better, carried) in _BETTER_RULES.items():
            handled.add(leader)
            handled.update(carried)
            changed.extend(self._merge_group(record, fields, leader, better, carried))

        changed.extend(self._merge_cover(record, fields))
        handled.update(("cover_url", "cover_resolution"))

        for name in SCALAR_FIELDS:
            if name in handled:
                continue
            if self._fill(record, name, fields.get(name)):
                changed.append(name)

        for name in IDENTIFIER_FIELDS:
            if self._fill(record, name, fields.get(name)):
                changed.append(name)

        for name in LIST_FIELDS:
            value = fields.get(name)
            if _is_empty(value):
                continue
            value = list(value)
            if value != getattr(record, name):
                setattr(record, name, value)
                changed.append(name)

        for name in MAP_FIELDS:
            value = fields.get(name)
            if _is_empty(value) or not isinstance(value, Mapping):
                continue
            current = getattr(record, name)
            updated = dict(current)
            for key, item in value.items():
                if item is None or (name == "metadata" and key in _VOLATILE_METADATA):
                    continue
                updated[key] = item
            if updated != current:
                setattr(record, name, updated)
                changed.append(name)

        if not changed:
            return MergeOutcome(record=existing, was_modified=False)

        incoming_metadata = fields.get("metadata")
        if isinstance(incoming_metadata, Mapping):
            volatile = {
                key: incoming_metadata[key]
                for key in _VOLATILE_METADATA
                if incoming_metadata.get(key) is not None
            }
            if volatile:
                record.metadata = {**record.metadata, **volatile}

        stamp = {"source": source, "timestamp": timestamp.isoformat()}
        provenance = dict(record.provenance)
        for name in changed:
            provenance[name] = dict(stamp)
        record.provenance = provenance
        record.last_updated = timestamp
        return MergeOutcome(record=record, was_modified=True, changed_fields=tuple(changed))

    @staticmethod
    def _fill(record: CanonicalRecord, name: str, value: Any) -> bool:
        if _is_empty(value) or not _is_empty(getattr(record, name)):
            return False
        setattr(record, name, value)
        return True

    @staticmethod
    def _merge_group(
        record: CanonicalRecord,
        fields: Mapping[str, Any],
        leader: str,
        better: Callable[[Any, Any], bool],
        carried: Tuple[str, ...],
    ) -> List[str]:
        incoming = fields.get(leader)
        current = getattr(record, leader)
        changed: List[str] = []
        take_group = not _is_empty(incoming) and (
            _is_empty(current) or (incoming != current and better(incoming, current))
        )
        if take_group:
            setattr(record, leader, incoming)
            changed.append(leader)
            for name in carried:
                value = fields.get(name)
                if not _is_empty(value) and value != getattr(record, name):
                    setattr(record, name, value)
                    changed.append(name)
            return changed
        for name in carried:
            if DocumentMerger._fill(record, name, fields.get(name)):
                changed.append(name)
        return changed

    @staticmethod
    def _merge_cover(record: CanonicalRecord, fields: Mapping[str, Any]) -> List[str]:
        url = fields.get("cover_url")
        if _is_empty(url) or url == record.cover_url:
            return []
        resolution = fields.get("cover_resolution") or 0
        if not _is_empty(record.cover_url) and resolution <= (record.cover_resolution or 0):
            return []
        changed = ["cover_url"]
        record.cover_url = url
        if fields.get("cover_resolution") is not None and record.cover_resolution != resolution:
            record.cover_resolution = resolution
            changed.append("cover_resolution")
        return changed


__all__ = ["DocumentMerger", "date_sort_key"]
