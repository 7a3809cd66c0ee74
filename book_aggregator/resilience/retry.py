"""Bounded retry with exponential backoff, for blocking and async callables."""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

from book_aggregator import logging_manager as log_mgr
from book_aggregator.catalog.errors import RetryExhaustedError, TransientIOError

from .circuit_breaker import CircuitBreaker

logger = log_mgr.get_logger().getChild("resilience.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry an operation up to ``max_attempts`` times.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. When a breaker is attached, it is consulted before
    every attempt (an open breaker raises without retrying) and informed of
    each retryable failure and of success. A half-open trial call that ends with
    any other exception, cancellation included, re-opens the breaker.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = (TransientIOError,)
    breaker: Optional[CircuitBreaker] = None
    sleep: Callable[[float], None] = time.sleep
    async_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be greater than zero")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must not be negative")

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry (``max_attempts - 1`` values)."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.multiplier

    def call(
        self,
        fn: Callable[[], T],
        *,
        operation: str = "operation",
        key: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        delays = self.delays()
        last_error: Optional[BaseException] = None
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            trial = self.breaker.before_call() if self.breaker is not None else False
            try:
                result = fn()
            except self.retry_on as exc:
                last_error = exc
                self._record_failure(operation, key, attempt, exc)
            except BaseException:
                if trial:
                    self.breaker.release_trial()
                raise
            else:
                if self.breaker is not None:
                    self.breaker.record_success()
                return result

            delay = next(delays, None)
            if delay is None:
                break
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    break
            else:
                self.sleep(delay)

        raise RetryExhaustedError(operation, attempt, last_error) from last_error

    async def acall(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        operation: str = "operation",
        key: Optional[str] = None,
    ) -> T:
        delays = self.delays()
        last_error: Optional[BaseException] = None
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            trial = self.breaker.before_call() if self.breaker is not None else False
            try:
                result = await fn()
            except self.retry_on as exc:
                last_error = exc
                self._record_failure(operation, key, attempt, exc)
            except BaseException:
                if trial:
                    self.breaker.release_trial()
                raise
            else:
                if self.breaker is not None:
                    self.breaker.record_success()
                return result

            delay = next(delays, None)
            if delay is None:
                break
            await self.async_sleep(delay)

        raise RetryExhaustedError(operation, attempt, last_error) from last_error

    def _record_failure(
        self, operation: str, key: Optional[str], attempt: int, exc: BaseException
    ) -> None:
        if self.breaker is not None:
            self.breaker.record_failure()
        logger.warning(
            "%s attempt %d/%d failed: %s",
            operation,
            attempt,
            self.max_attempts,
            exc,
            extra={
                "event": "resilience.retry.attempt_failed",
                "operation": operation,
                "object_key": key,
                "attempt": attempt,
                "console_suppress": True,
            },
        )


__all__ = ["RetryPolicy"]
