"""SQLAlchemy models; import all to register with Base.metadata."""

from .catalog import CanonicalBookModel, ExternalIdModel

__all__ = ["CanonicalBookModel", "ExternalIdModel"]
