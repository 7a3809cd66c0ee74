"""Resolve, merge and persist source documents into the canonical store."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple, TypeVar

from book_aggregator import logging_manager as log_mgr

from .errors import MissingIdentifierError, PersistenceError, RetryExhaustedError
from .formats import dedupe_entries, split_payload
from .identity import IdentityResolver
from .merger import DocumentMerger
from .repository import CanonicalRepository
from .types import CanonicalRecord, SourceDocument

if TYPE_CHECKING:
    from book_aggregator.resilience.retry import RetryPolicy

logger = log_mgr.get_logger().getChild("catalog.ingest")

_LOCK_STRIPES = 64

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class IngestResult:
    """Outcome of ingesting one source document."""

    record: CanonicalRecord
    created: bool
    was_modified: bool
    document: SourceDocument


@dataclass(frozen=True, slots=True)
class PayloadIngest:
    """Results for every entry of one payload, plus the entries left out.

    Entries without any identifier are skipped before anything is written.
    """

    results: Tuple[IngestResult, ...]
    skipped: Tuple[SourceDocument, ...] = ()


class IngestService:
    """Shared write path used by the migration pipeline and live provider lookups."""

    def __init__(
        self,
        repository: CanonicalRepository,
        *,
        resolver: Optional[IdentityResolver] = None,
        merger: Optional[DocumentMerger] = None,
        persistence_retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._repository = repository
        self._resolver = resolver or IdentityResolver(repository)
        self._merger = merger or DocumentMerger()
        self._persistence_retry = persistence_retry
        # Striped locks serialise read-merge-write per record within this process.
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    @property
    def merger(self) -> DocumentMerger:
        return self._merger

    @property
    def resolver(self) -> IdentityResolver:
        return self._resolver

    def documents_from_payload(self, payload: Any, *, source_key: Optional[str] = None) -> List[SourceDocument]:
        """Split, de-duplicate, classify and flatten ``payload`` into source documents."""

        return [
            self._merger.create_unified(entry, source_key=source_key)
            for entry in dedupe_entries(split_payload(payload))
        ]

    def ingest_payload(
        self,
        payload: Any,
        *,
        source_key: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> List[IngestResult]:
        return list(self.ingest_entries(payload, source_key=source_key, retry=retry).results)

    def ingest_entries(
        self,
        payload: Any,
        *,
        source_key: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> PayloadIngest:
        """Ingest every identifiable entry of ``payload``.

        Raises :class:`MissingIdentifierError` only when no entry at all can
        be resolved; otherwise unidentifiable entries are reported in
        ``skipped``. ``retry`` overrides the service's persistence policy.
        """

        documents = self.documents_from_payload(payload, source_key=source_key)
        usable = [document for document in documents if _identifiable(document)]
        skipped = tuple(document for document in documents if not _identifiable(document))
        if not usable:
            raise MissingIdentifierError(
                f"payload {source_key or '<inline>'} has no entry with an isbn or provider id"
            )
        if skipped:
            logger.warning(
                "Skipping %d of %d entries without identifiers in %s",
                len(skipped),
                len(documents),
                source_key or "<inline>",
                extra={
                    "event": "catalog.ingest.entries_skipped",
                    "object_key": source_key,
                    "skipped": len(skipped),
                },
            )
        results = tuple(self.ingest_document(document, retry=retry) for document in usable)
        return PayloadIngest(results=results, skipped=skipped)

    def ingest_document(self, document: SourceDocument, *, retry: Optional[RetryPolicy] = None) -> IngestResult:
        if not _identifiable(document):
            raise MissingIdentifierError(
                f"document {document.source_key or '<inline>'} has no isbn or provider id"
            )

        policy = retry or self._persistence_retry
        key = document.source_key or document.source.value
        if document.has_identifier:
            record_id, created = self._guarded(
                policy, lambda: self._resolver.resolve_document(document), "resolve", key
            )
        else:
            record_id, created = document.canonical_id, False

        with self._lock_for(record_id):
            existing = self._guarded(policy, lambda: self._repository.get(record_id), "load", record_id)
            if existing is None:
                existing = CanonicalRecord(id=record_id)
                created = True
            outcome = self._merger.merge(existing, document)
            if outcome.was_modified or created:
                self._guarded(
                    policy, lambda: self._repository.save(outcome.record), "persist", record_id
                )

        logger.debug(
            "Ingested %s into %s",
            key,
            record_id,
            extra={
                "event": "catalog.ingest.document",
                "record_id": record_id,
                "created": created,
                "was_modified": outcome.was_modified,
                "changed_fields": list(outcome.changed_fields),
                "console_suppress": True,
            },
        )
        return IngestResult(
            record=outcome.record,
            created=created,
            was_modified=outcome.was_modified,
            document=document,
        )

    def _lock_for(self, record_id: str) -> threading.Lock:
        return self._locks[hash(record_id) % _LOCK_STRIPES]

    @staticmethod
    def _guarded(policy: Optional[RetryPolicy], fn: Callable[[], T], operation: str, key: str) -> T:
        if policy is None:
            return fn()
        try:
            return policy.call(fn, operation=operation, key=key)
        except RetryExhaustedError as exc:
            raise PersistenceError(
                f"{operation} for {key} failed after {exc.attempts} attempt(s)"
            ) from exc


def _identifiable(document: SourceDocument) -> bool:
    return document.has_identifier or bool(document.canonical_id)


__all__ = ["IngestResult", "IngestService", "PayloadIngest"]
