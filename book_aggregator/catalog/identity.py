"""Resolution of provider identifiers to canonical record ids."""

from __future__ import annotations

from typing import Mapping, Optional, Tuple

from book_aggregator import logging_manager as log_mgr

from .errors import ConflictError, MissingIdentifierError, PersistenceError
from .identifiers import new_canonical_id, normalize_isbn10, normalize_isbn13
from .repository import CanonicalRepository
from .types import ProviderSource, SourceDocument

logger = log_mgr.get_logger().getChild("catalog.identity")


class IdentityResolver:
    """Map ISBN-13, ISBN-10 or a provider id to exactly one canonical id.

    Lookup order is ISBN-13, then ISBN-10, then the provider id; the first
    hit wins. Creation relies on the repository's unique constraints: when a
    concurrent writer claims an identifier first, the resolver re-reads and
    returns the winner instead of surfacing the conflict.
    """

    def __init__(self, repository: CanonicalRepository, *, max_conflict_retries: int = 3) -> None:
        self._repository = repository
        self._max_conflict_retries = max(1, max_conflict_retries)

    def resolve(
        self,
        *,
        isbn13: Optional[str] = None,
        isbn10: Optional[str] = None,
        provider_id: Optional[str] = None,
        provider: str = ProviderSource.GOOGLE_BOOKS.value,
    ) -> Optional[str]:
        isbn13 = normalize_isbn13(isbn13)
        if isbn13:
            found = self._repository.find_id_by_isbn13(isbn13)
            if found:
                return found
        isbn10 = normalize_isbn10(isbn10)
        if isbn10:
            found = self._repository.find_id_by_isbn10(isbn10)
            if found:
                return found
        if provider_id:
            return self._repository.find_id_by_provider_id(provider, provider_id)
        return None

    def create_canonical(
        self,
        *,
        isbn13: Optional[str] = None,
        isbn10: Optional[str] = None,
        provider_id: Optional[str] = None,
        provider: str = ProviderSource.GOOGLE_BOOKS.value,
        external_ids: Optional[Mapping[str, str]] = None,
        record_id: Optional[str] = None,
    ) -> str:
        """Create a canonical id for the identifiers, or return the conflict winner."""

        canonical_id, _ = self._create(
            isbn13=isbn13,
            isbn10=isbn10,
            provider_id=provider_id,
            provider=provider,
            external_ids=external_ids,
            record_id=record_id,
        )
        return canonical_id

    def resolve_or_create(
        self,
        *,
        isbn13: Optional[str] = None,
        isbn10: Optional[str] = None,
        provider_id: Optional[str] = None,
        provider: str = ProviderSource.GOOGLE_BOOKS.value,
        external_ids: Optional[Mapping[str, str]] = None,
        record_id: Optional[str] = None,
    ) -> Tuple[str, bool]:
        """Return ``(canonical_id, created)`` for the given identifiers."""

        found = self.resolve(
            isbn13=isbn13, isbn10=isbn10, provider_id=provider_id, provider=provider
        )
        if found:
            return found, False
        return self._create(
            isbn13=isbn13,
            isbn10=isbn10,
            provider_id=provider_id,
            provider=provider,
            external_ids=external_ids,
            record_id=record_id,
        )

    def resolve_document(self, document: SourceDocument) -> Tuple[str, bool]:
        return self.resolve_or_create(
            isbn13=document.isbn13,
            isbn10=document.isbn10,
            provider_id=document.provider_id,
            external_ids=document.fields.get("external_ids"),
            record_id=document.canonical_id or document.placeholder_id,
        )

    def _create(
        self,
        *,
        isbn13: Optional[str],
        isbn10: Optional[str],
        provider_id: Optional[str],
        provider: str,
        external_ids: Optional[Mapping[str, str]],
        record_id: Optional[str],
    ) -> Tuple[str, bool]:
        isbn13 = normalize_isbn13(isbn13)
        isbn10 = normalize_isbn10(isbn10)
        if not (isbn13 or isbn10 or provider_id):
            raise MissingIdentifierError("at least one of isbn13, isbn10 or provider id is required")

        ids = dict(external_ids or {})
        if provider_id:
            ids.setdefault(provider, provider_id)

        last_conflict: Optional[ConflictError] = None
        for attempt in range(1, self._max_conflict_retries + 1):
            candidate = record_id if attempt == 1 and record_id else new_canonical_id()
            try:
                self._repository.create_identity(
                    candidate, isbn13=isbn13, isbn10=isbn10, external_ids=ids
                )
            except ConflictError as exc:
                last_conflict = exc
                winner = self.resolve(
                    isbn13=isbn13, isbn10=isbn10, provider_id=provider_id, provider=provider
                )
                logger.info(
                    "Canonical id creation lost a race",
                    extra={
                        "event": "catalog.identity.conflict",
                        "attempt": attempt,
                        "winner": winner,
                        "isbn13": isbn13,
                        "isbn10": isbn10,
                        "console_suppress": True,
                    },
                )
                if winner:
                    return winner, False
                continue
            logger.debug(
                "Created canonical id %s",
                candidate,
                extra={"event": "catalog.identity.created", "console_suppress": True},
            )
            return candidate, True

        raise PersistenceError(
            "canonical id creation kept conflicting without a resolvable winner"
        ) from last_conflict


__all__ = ["IdentityResolver"]
