"""Retry, circuit breaking and run bookkeeping."""

from .circuit_breaker import BreakerSnapshot, CircuitBreaker, CircuitState
from .progress import ErrorDetail, MigrationErrorAggregator, MigrationProgress
from .retry import RetryPolicy

__all__ = [
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitState",
    "ErrorDetail",
    "MigrationErrorAggregator",
    "MigrationProgress",
    "RetryPolicy",
]
