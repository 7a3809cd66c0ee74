"""Retry policy and circuit breaker behaviour."""

from __future__ import annotations

import asyncio
import threading

import pytest

from book_aggregator.catalog.errors import (
    CircuitOpenError,
    FormatError,
    RetryExhaustedError,
    TransientIOError,
)
from book_aggregator.resilience import CircuitBreaker, CircuitState, RetryPolicy
from tests.helpers.fakes import FakeClock

pytestmark = pytest.mark.resilience


class Flaky:
    def __init__(self, failures: int, exc: BaseException = TransientIOError("boom")) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class TestRetryPolicy:
    """Bounded exponential backoff."""

    def test_delays_double_from_the_initial_delay(self):
        policy = RetryPolicy(max_attempts=4, initial_delay=1.0, max_delay=3.0)
        assert list(policy.delays()) == [1.0, 2.0, 3.0]

    def test_succeeds_after_transient_failures(self):
        slept = []
        fn = Flaky(failures=2)
        policy = RetryPolicy(max_attempts=3, initial_delay=1.0, sleep=slept.append)

        assert policy.call(fn, operation="fetch", key="k") == "ok"
        assert fn.calls == 3
        assert slept == [1.0, 2.0]

    def test_exhaustion_carries_the_last_error(self):
        fn = Flaky(failures=10)
        policy = RetryPolicy(max_attempts=3, initial_delay=0.0, sleep=lambda _: None)

        with pytest.raises(RetryExhaustedError) as excinfo:
            policy.call(fn, operation="fetch")

        assert fn.calls == 3
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, TransientIOError)
        assert isinstance(excinfo.value, TransientIOError)

    def test_non_retryable_errors_propagate_immediately(self):
        fn = Flaky(failures=1, exc=FormatError("bad json"))
        policy = RetryPolicy(max_attempts=3, initial_delay=0.0, sleep=lambda _: None)

        with pytest.raises(FormatError):
            policy.call(fn)
        assert fn.calls == 1

    def test_cancel_event_stops_waiting(self):
        cancel = threading.Event()
        cancel.set()
        fn = Flaky(failures=10)
        policy = RetryPolicy(max_attempts=5, initial_delay=30.0)

        with pytest.raises(RetryExhaustedError):
            policy.call(fn, cancel_event=cancel)
        assert fn.calls == 1

    def test_async_retry(self):
        async def run_test():
            calls = {"count": 0}

            async def operation():
                calls["count"] += 1
                if calls["count"] < 2:
                    raise TransientIOError("slow")
                return 42

            async def no_sleep(_delay):
                return None

            policy = RetryPolicy(max_attempts=3, initial_delay=0.5, async_sleep=no_sleep)
            result = await policy.acall(operation, operation="provider_lookup")
            return result, calls["count"]

        assert asyncio.run(run_test()) == (42, 2)


class TestCircuitBreaker:
    """CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN."""

    def test_opens_after_threshold_and_fails_fast(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout=60.0, clock=clock)
        for _ in range(2):
            breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

        breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_half_open_trial_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60.0, clock=clock)
        breaker.record_failure()

        clock.advance(60.0)
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.before_call() is True
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_half_open_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=10.0, clock=clock)
        breaker.record_failure()
        breaker.record_failure()
        clock.advance(10.0)
        breaker.before_call()

        breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        assert breaker.snapshot().opened_at == clock.now

    def test_success_resets_the_consecutive_count(self):
        breaker = CircuitBreaker(failure_threshold=3)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED

    def test_retry_policy_fails_fast_once_the_breaker_opens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=300.0, clock=clock)
        policy = RetryPolicy(max_attempts=5, initial_delay=0.0, breaker=breaker, sleep=lambda _: None)
        fn = Flaky(failures=100)

        with pytest.raises(CircuitOpenError):
            policy.call(fn)
        assert fn.calls == 2

        with pytest.raises(CircuitOpenError):
            policy.call(fn)
        assert fn.calls == 2

    def test_trial_call_ending_in_an_unrelated_error_reopens_instead_of_sticking(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=clock)
        policy = RetryPolicy(max_attempts=1, initial_delay=0.0, breaker=breaker)
        breaker.record_failure()
        clock.advance(30.0)

        with pytest.raises(OSError):
            policy.call(Flaky(failures=1, exc=OSError("disk read failed")))
        assert breaker.state is CircuitState.OPEN

        clock.advance(30.0)
        assert policy.call(lambda: "ok") == "ok"
        assert breaker.state is CircuitState.CLOSED

    def test_cancelled_async_trial_call_does_not_wedge_the_breaker(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=clock)
        policy = RetryPolicy(max_attempts=1, initial_delay=0.0, breaker=breaker)
        breaker.record_failure()
        clock.advance(30.0)

        async def cancelled():
            raise asyncio.CancelledError()

        async def ok():
            return "ok"

        async def run_test():
            with pytest.raises(asyncio.CancelledError):
                await policy.acall(cancelled, operation="provider_lookup")
            clock.advance(10_000.0)
            return await policy.acall(ok, operation="provider_lookup")

        assert asyncio.run(run_test()) == "ok"
        assert breaker.state is CircuitState.CLOSED

    def test_non_retryable_error_while_closed_leaves_the_breaker_alone(self):
        breaker = CircuitBreaker(failure_threshold=1)
        policy = RetryPolicy(max_attempts=3, initial_delay=0.0, breaker=breaker)

        with pytest.raises(FormatError):
            policy.call(Flaky(failures=1, exc=FormatError("bad payload")))

        assert breaker.state is CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
