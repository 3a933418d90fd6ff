"""Tests for the retry policy and circuit breaker."""

from __future__ import annotations

import random

import pytest

from edge_deploy.utils.errors import ClassifiedError, ErrorKind
from edge_deploy.utils.retry import CircuitBreaker, RetryPolicy


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def error(kind: ErrorKind = ErrorKind.TRANSIENT_PLATFORM, retryable: bool = True) -> ClassifiedError:
    return ClassifiedError(kind=kind, message="boom", retryable=retryable)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestBackoff:
    def test_delays_double_from_base(self):
        policy = RetryPolicy(max_attempts=5, base_delay_ms=1000, max_delay_ms=30000)

        assert [policy.get_delay_ms(attempt) for attempt in range(4)] == [1000, 2000, 4000, 8000]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=5000)

        assert policy.get_delay_ms(10) == 5000

    def test_same_inputs_give_same_decisions(self):
        decisions = []
        for _ in range(2):
            policy = RetryPolicy(max_attempts=3, base_delay_ms=500)
            decisions.append([policy.should_retry(error(), attempt) for attempt in range(3)])

        assert decisions[0] == decisions[1]
        assert [d.retry for d in decisions[0]] == [True, True, False]
        assert [d.delay_ms for d in decisions[0][:2]] == [500, 1000]

    def test_jitter_stays_within_ratio(self):
        policy = RetryPolicy(base_delay_ms=1000, jitter_ratio=0.5, rng=random.Random(7))

        for attempt in range(3):
            delay = policy.get_delay_ms(attempt)
            base = 1000 * 2 ** attempt
            assert base <= delay <= base * 1.5

    def test_jitter_never_exceeds_max_delay(self):
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=3000, jitter_ratio=1.0, rng=random.Random(7))

        delays = [policy.get_delay_ms(attempt) for attempt in range(2, 8)]

        assert delays == [3000] * 6

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(jitter_ratio=2.0)


class TestShouldRetry:
    def test_non_retryable_error_is_not_retried(self):
        decision = RetryPolicy().should_retry(error(ErrorKind.VALIDATION, retryable=False), 0)

        assert decision.retry is False
        assert "not retryable" in decision.reason

    def test_deployment_errors_use_their_own_limit(self):
        policy = RetryPolicy(max_attempts=5, max_deployment_attempts=2)

        assert policy.should_retry(error(ErrorKind.DEPLOYMENT), 0).retry is True
        assert policy.should_retry(error(ErrorKind.DEPLOYMENT), 1).retry is False

    def test_exhausted_attempts(self):
        decision = RetryPolicy(max_attempts=2).should_retry(error(), 1)

        assert decision.retry is False
        assert "exhausted" in decision.reason


class TestCircuitBreaker:
    def test_opens_at_threshold_within_window(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, window_seconds=60, clock=clock)

        assert breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM) == CircuitBreaker.CLOSED
        assert breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM) == CircuitBreaker.CLOSED
        assert breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM) == CircuitBreaker.OPEN
        assert breaker.is_open(ErrorKind.TRANSIENT_PLATFORM)

    def test_kinds_are_tracked_separately(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, clock=clock)
        breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM)
        breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM)

        assert breaker.is_open(ErrorKind.TRANSIENT_PLATFORM)
        assert not breaker.is_open(ErrorKind.DEPLOYMENT)

    def test_failures_outside_window_are_forgotten(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, window_seconds=10, clock=clock)
        breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM)
        clock.advance(11)

        assert breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM) == CircuitBreaker.CLOSED

    def test_half_open_after_window_and_reopens_on_failure(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, window_seconds=10, clock=clock)
        breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM)
        clock.advance(10)

        assert breaker.state(ErrorKind.TRANSIENT_PLATFORM) == CircuitBreaker.HALF_OPEN
        assert breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM) == CircuitBreaker.OPEN

    def test_success_closes_circuit(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, clock=clock)
        breaker.record_failure(ErrorKind.TRANSIENT_PLATFORM)
        breaker.record_success(ErrorKind.TRANSIENT_PLATFORM)

        assert breaker.state(ErrorKind.TRANSIENT_PLATFORM) == CircuitBreaker.CLOSED

    def test_open_circuit_refuses_retry(self, clock):
        policy = RetryPolicy(
            max_attempts=10,
            circuit_breaker=CircuitBreaker(failure_threshold=2, clock=clock),
        )

        assert policy.should_retry(error(), 0).retry is True
        decision = policy.should_retry(error(), 1)

        assert decision.retry is False
        assert "circuit open" in decision.reason
