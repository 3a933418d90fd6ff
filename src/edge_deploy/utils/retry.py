"""Retry policy with exponential backoff and a per-kind circuit breaker."""

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from edge_deploy.utils.errors import ClassifiedError, ErrorKind
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry evaluation."""
    retry: bool
    delay_ms: int = 0
    reason: str = ""


class CircuitBreaker:
    """Tracks consecutive failures per error kind.

    The breaker has three states per kind:
    - CLOSED: failures are counted, retries allowed
    - OPEN: threshold reached inside the window, retries refused
    - HALF_OPEN: window elapsed since opening, one more attempt allowed
    """

    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures within the window that open the circuit
            window_seconds: Length of the counting window and of the open period
            clock: Monotonic time source in seconds
        """
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.clock = clock

        self._failures: Dict[ErrorKind, List[float]] = {}
        self._opened_at: Dict[ErrorKind, float] = {}
        self._lock = threading.Lock()

    def record_failure(self, kind: ErrorKind) -> str:
        """Record a failure and return the resulting state."""
        with self._lock:
            now = self.clock()
            state = self._state(kind, now)

            if state == self.HALF_OPEN:
                # Trial attempt failed, reopen for another window
                self._opened_at[kind] = now
                self._failures[kind] = [now]
                logger.warning(f"Circuit breaker for {kind.value} reopened after trial failure")
                return self.OPEN

            if state == self.OPEN:
                return self.OPEN

            recent = [t for t in self._failures.get(kind, []) if now - t < self.window_seconds]
            recent.append(now)
            self._failures[kind] = recent

            if len(recent) >= self.failure_threshold:
                self._opened_at[kind] = now
                logger.error(
                    f"Circuit breaker opening for {kind.value} after {len(recent)} failures "
                    f"within {self.window_seconds:.0f}s"
                )
                return self.OPEN
            return self.CLOSED

    def record_success(self, kind: ErrorKind) -> None:
        """Reset the failure count for a kind."""
        with self._lock:
            if kind in self._opened_at:
                logger.info(f"Circuit breaker for {kind.value} closing after successful attempt")
            self._failures.pop(kind, None)
            self._opened_at.pop(kind, None)

    def is_open(self, kind: ErrorKind) -> bool:
        with self._lock:
            return self._state(kind, self.clock()) == self.OPEN

    def state(self, kind: ErrorKind) -> str:
        with self._lock:
            return self._state(kind, self.clock())

    def reset(self) -> None:
        """Manually reset every circuit."""
        with self._lock:
            self._failures.clear()
            self._opened_at.clear()
        logger.info("Circuit breaker manually reset")

    def _state(self, kind: ErrorKind, now: float) -> str:
        opened_at = self._opened_at.get(kind)
        if opened_at is None:
            return self.CLOSED
        if now - opened_at < self.window_seconds:
            return self.OPEN
        return self.HALF_OPEN


class RetryPolicy:
    """Decides whether and when a classified failure is retried."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        max_deployment_attempts: int = 2,
        jitter_ratio: float = 0.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        rng: Optional[random.Random] = None
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Total attempts allowed for a retryable kind
            base_delay_ms: Delay before the first retry
            max_delay_ms: Upper bound for a single delay
            max_deployment_attempts: Total attempts allowed for generic deployment failures
            jitter_ratio: Upper bound of random jitter as a fraction of the delay (0 disables)
            circuit_breaker: Breaker shared by every evaluation of this policy
            rng: Random source used for jitter
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0 and 1")

        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_deployment_attempts = max_deployment_attempts
        self.jitter_ratio = jitter_ratio
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._rng = rng or random.Random()

    def should_retry(self, error: ClassifiedError, attempt: int) -> RetryDecision:
        """Evaluate a failure.

        Args:
            error: The classified failure
            attempt: Zero-based index of the attempt that just failed

        Returns:
            RetryDecision with the delay to wait before the next attempt
        """
        state = self.circuit_breaker.record_failure(error.kind)
        if state == CircuitBreaker.OPEN:
            return RetryDecision(False, 0, f"circuit open for {error.kind.value}")

        if not error.retryable:
            return RetryDecision(False, 0, f"{error.kind.value} is not retryable")

        limit = self.max_attempts
        if error.kind == ErrorKind.DEPLOYMENT:
            limit = min(limit, self.max_deployment_attempts)

        if attempt + 1 >= limit:
            return RetryDecision(False, 0, f"retries exhausted after {attempt + 1} attempt(s)")

        return RetryDecision(True, self.get_delay_ms(attempt), "retryable")

    def record_success(self, kind: ErrorKind) -> None:
        self.circuit_breaker.record_success(kind)

    def get_delay_ms(self, attempt: int) -> int:
        """Calculate backoff before the next attempt.

        Args:
            attempt: Zero-based index of the attempt that just failed

        Returns:
            Delay in milliseconds
        """
        delay = min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)

        if self.jitter_ratio:
            delay += self._rng.uniform(0, delay * self.jitter_ratio)

        return int(min(delay, self.max_delay_ms))
