"""SQLAlchemy database layer for book-aggregator.

Provides the shared engine, session factory, and declarative base
used by the canonical record repository.
"""

from .base import Base
from .engine import (
    build_engine,
    build_session_factory,
    dispose_engine,
    get_engine,
    get_session_factory,
    init_schema,
    session_scope,
)

__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "init_schema",
    "session_scope",
]
