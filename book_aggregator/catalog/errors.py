"""Exception hierarchy shared by the catalog, lookup and migration layers."""

from __future__ import annotations

from typing import Optional


class BookAggregatorError(Exception):
    """Base class for all book-aggregator failures."""

    kind = "error"


class TransientIOError(BookAggregatorError):
    """A remote call failed in a way that may succeed when retried."""

    kind = "transient_io"


class RetryExhaustedError(TransientIOError):
    """Every attempt of a retried operation failed."""

    kind = "retry_exhausted"

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"{operation} failed after {attempts} attempt(s){detail}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class ConflictError(BookAggregatorError):
    """A unique identifier is already claimed by another canonical record."""

    kind = "conflict"


class FormatError(BookAggregatorError):
    """A source payload could not be parsed or classified."""

    kind = "format"


class MissingIdentifierError(FormatError):
    """A document carries no identifier usable for canonical resolution."""

    kind = "missing_identifier"


class PersistenceError(BookAggregatorError):
    """The canonical store rejected a write after retries."""

    kind = "persistence"


class CircuitOpenError(BookAggregatorError):
    """The circuit breaker is open and the call was not attempted."""

    kind = "circuit_open"


class InvalidLookupError(BookAggregatorError, ValueError):
    """A lookup was requested with a malformed identifier."""

    kind = "invalid_lookup"


class ListingError(BookAggregatorError):
    """The archive listing could not be completed."""

    kind = "listing"


def error_kind(exc: BaseException) -> str:
    """Return the short kind label used in error reports."""

    if isinstance(exc, BookAggregatorError):
        return exc.kind
    return type(exc).__name__


__all__ = [
    "BookAggregatorError",
    "CircuitOpenError",
    "ConflictError",
    "FormatError",
    "InvalidLookupError",
    "ListingError",
    "MissingIdentifierError",
    "PersistenceError",
    "RetryExhaustedError",
    "TransientIOError",
    "error_kind",
]
