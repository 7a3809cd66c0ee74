"""Canonical record persistence backed by SQLAlchemy."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from book_aggregator import logging_manager as log_mgr
from book_aggregator.database.engine import session_scope
from book_aggregator.database.models import CanonicalBookModel, ExternalIdModel

from .errors import ConflictError, PersistenceError
from .types import CanonicalRecord, ProviderSource

logger = log_mgr.get_logger().getChild("catalog.repository")

# Only these external ids are unique per physical edition.
INDEXED_PROVIDERS: frozenset[str] = frozenset(
    {ProviderSource.GOOGLE_BOOKS.value, ProviderSource.OPENLIBRARY.value}
)


class CanonicalRepository(Protocol):
    """Storage backend for canonical records and their identifier index."""

    def find_id_by_isbn13(self, isbn13: str) -> Optional[str]:
        ...

    def find_id_by_isbn10(self, isbn10: str) -> Optional[str]:
        ...

    def find_id_by_provider_id(self, provider: str, external_id: str) -> Optional[str]:
        ...

    def create_identity(
        self,
        record_id: str,
        *,
        isbn13: Optional[str] = None,
        isbn10: Optional[str] = None,
        external_ids: Optional[Mapping[str, str]] = None,
    ) -> None:
        ...

    def get(self, record_id: str) -> Optional[CanonicalRecord]:
        ...

    def get_many(self, record_ids: Iterable[str]) -> Dict[str, CanonicalRecord]:
        ...

    def save(self, record: CanonicalRecord) -> CanonicalRecord:
        ...


def _indexed(external_ids: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {
        provider: str(value)
        for provider, value in (external_ids or {}).items()
        if provider in INDEXED_PROVIDERS and value
    }


def _to_record(model: CanonicalBookModel) -> CanonicalRecord:
    payload = dict(model.payload or {})
    payload["id"] = model.id
    return CanonicalRecord.from_dict(payload)


class SqlAlchemyCanonicalRepository:
    """Repository over the ``canonical_books`` and ``book_external_ids`` tables.

    Unique constraints on ``isbn13``, ``isbn10`` and ``(provider, external_id)``
    are what make concurrent find-or-create safe; violations surface as
    :class:`ConflictError`.
    """

    def __init__(self, session_factory: Optional[sessionmaker[Session]] = None) -> None:
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    def _find(self, statement, label: str) -> Optional[str]:
        try:
            with self._session() as session:
                return session.scalar(statement)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"identifier lookup failed for {label}") from exc

    def find_id_by_isbn13(self, isbn13: str) -> Optional[str]:
        return self._find(
            select(CanonicalBookModel.id).where(CanonicalBookModel.isbn13 == isbn13), isbn13
        )

    def find_id_by_isbn10(self, isbn10: str) -> Optional[str]:
        return self._find(
            select(CanonicalBookModel.id).where(CanonicalBookModel.isbn10 == isbn10), isbn10
        )

    def find_id_by_provider_id(self, provider: str, external_id: str) -> Optional[str]:
        return self._find(
            select(ExternalIdModel.canonical_id).where(
                ExternalIdModel.provider == provider,
                ExternalIdModel.external_id == external_id,
            ),
            f"{provider}:{external_id}",
        )

    def create_identity(
        self,
        record_id: str,
        *,
        isbn13: Optional[str] = None,
        isbn10: Optional[str] = None,
        external_ids: Optional[Mapping[str, str]] = None,
    ) -> None:
        indexed = _indexed(external_ids)
        record = CanonicalRecord(
            id=record_id, isbn13=isbn13, isbn10=isbn10, external_ids=dict(external_ids or {})
        )
        try:
            with self._session() as session:
                session.add(
                    CanonicalBookModel(
                        id=record_id,
                        isbn13=isbn13,
                        isbn10=isbn10,
                        payload=record.to_dict(),
                    )
                )
                session.flush()
                for provider, value in indexed.items():
                    session.add(
                        ExternalIdModel(canonical_id=record_id, provider=provider, external_id=value)
                    )
        except IntegrityError as exc:
            raise ConflictError(f"identifier already claimed while creating {record_id}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to create canonical record {record_id}") from exc

    def get(self, record_id: str) -> Optional[CanonicalRecord]:
        try:
            with self._session() as session:
                model = session.get(CanonicalBookModel, record_id)
                return _to_record(model) if model is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load canonical record {record_id}") from exc

    def get_many(self, record_ids: Iterable[str]) -> Dict[str, CanonicalRecord]:
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return {}
        try:
            with self._session() as session:
                rows = session.scalars(
                    select(CanonicalBookModel).where(CanonicalBookModel.id.in_(ids))
                ).all()
                return {row.id: _to_record(row) for row in rows}
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to load {len(ids)} canonical record(s)") from exc

    def save(self, record: CanonicalRecord) -> CanonicalRecord:
        """Upsert ``record``; identifier columns only ever fill when empty."""
        try:
            return self._save(record, claim_identifiers=True)
        except IntegrityError:
            logger.warning(
                "Identifier already owned by another record; keeping stored identifiers",
                extra={
                    "event": "catalog.repository.identifier_conflict",
                    "record_id": record.id,
                    "isbn13": record.isbn13,
                    "isbn10": record.isbn10,
                },
            )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to save canonical record {record.id}") from exc
        try:
            return self._save(record, claim_identifiers=False)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to save canonical record {record.id}") from exc

    def _save(self, record: CanonicalRecord, *, claim_identifiers: bool) -> CanonicalRecord:
        with self._session() as session:
            model = session.get(CanonicalBookModel, record.id)
            if model is None:
                model = CanonicalBookModel(id=record.id)
                session.add(model)
            model.title = record.title
            model.payload = record.to_dict()
            model.last_updated = record.last_updated
            if claim_identifiers:
                if model.isbn13 is None and record.isbn13:
                    model.isbn13 = record.isbn13
                if model.isbn10 is None and record.isbn10:
                    model.isbn10 = record.isbn10
                session.flush()
                self._claim_external_ids(session, record.id, record.external_ids)
        return record

    @staticmethod
    def _claim_external_ids(session: Session, record_id: str, external_ids: Mapping[str, str]) -> None:
        indexed = _indexed(external_ids)
        if not indexed:
            return
        existing = {
            (row.provider, row.external_id)
            for row in session.scalars(
                select(ExternalIdModel).where(ExternalIdModel.canonical_id == record_id)
            )
        }
        for provider, value in indexed.items():
            if (provider, value) in existing:
                continue
            session.add(ExternalIdModel(canonical_id=record_id, provider=provider, external_id=value))
        session.flush()


__all__ = ["CanonicalRepository", "INDEXED_PROVIDERS", "SqlAlchemyCanonicalRepository"]
