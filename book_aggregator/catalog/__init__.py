"""Canonical book records: identity resolution, merging and persistence."""

from __future__ import annotations

from .errors import (
    BookAggregatorError,
    CircuitOpenError,
    ConflictError,
    FormatError,
    InvalidLookupError,
    ListingError,
    MissingIdentifierError,
    PersistenceError,
    RetryExhaustedError,
    TransientIOError,
)
from .formats import classify, extract_document, flatten, split_payload
from .identifiers import is_canonical_id, new_canonical_id, normalize_isbn
from .identity import IdentityResolver
from .ingest import IngestResult, IngestService, PayloadIngest
from .merger import DocumentMerger
from .repository import CanonicalRepository, SqlAlchemyCanonicalRepository
from .types import (
    CanonicalRecord,
    LookupResult,
    MergeOutcome,
    ProviderSource,
    SearchPage,
    SourceDocument,
    SourceFormat,
)

__all__ = [
    "BookAggregatorError",
    "CanonicalRecord",
    "CanonicalRepository",
    "CircuitOpenError",
    "ConflictError",
    "DocumentMerger",
    "FormatError",
    "IdentityResolver",
    "IngestResult",
    "IngestService",
    "InvalidLookupError",
    "ListingError",
    "LookupResult",
    "MergeOutcome",
    "MissingIdentifierError",
    "PayloadIngest",
    "PersistenceError",
    "ProviderSource",
    "RetryExhaustedError",
    "SearchPage",
    "SourceDocument",
    "SourceFormat",
    "SqlAlchemyCanonicalRepository",
    "TransientIOError",
    "classify",
    "extract_document",
    "flatten",
    "is_canonical_id",
    "new_canonical_id",
    "normalize_isbn",
    "split_payload",
]
