"""Canonical catalog models: books and their external identifiers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import Base, TimestampMixin

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class CanonicalBookModel(TimestampMixin, Base):
    __tablename__ = "canonical_books"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    isbn13: Mapped[Optional[str]] = mapped_column(String(13), nullable=True, unique=True)
    isbn10: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, unique=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    last_updated: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    external_ids: Mapped[list[ExternalIdModel]] = relationship(
        back_populates="book", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_canonical_books_last_updated", "last_updated"),)


class ExternalIdModel(Base):
    __tablename__ = "book_external_ids"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    canonical_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("canonical_books.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    book: Mapped[CanonicalBookModel] = relationship(back_populates="external_ids")

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_book_external_ids_provider"),
        Index("idx_book_external_ids_canonical", "canonical_id"),
    )
