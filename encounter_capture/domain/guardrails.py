"""Domain Guardrails - Submission Guard and Circuit Breaker.

This module provides the guardrails that keep the sync pipeline from
duplicating work or hammering an unavailable server.

    - SubmissionGuard: an entry guard around the Submit transition. A second
      Submit for the same encounter while one is in flight is rejected, not
      queued, so at most one server record is ever created per encounter.
    - CircuitBreaker: monitors remote failure rates during a replay of queued
      envelopes and opens when the failure threshold is exceeded, so a dead
      server is not hit once per queued encounter.

Security Impact:
    - Prevents duplicate clinical records from double submission
    - Reduces log noise from repeated failures
    - Provides configurable thresholds for different deployments

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Works with Result type from ports to monitor success/failure
    - Thread-safe design; guards are also safe to share across asyncio tasks
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Iterator, Optional

from encounter_capture.domain.ports import Result

logger = logging.getLogger(__name__)


class SubmissionGuard:
    """Entry guard that blocks re-entrant submissions per encounter.

    Encounters are identified by their local id, which is stable across
    identifier reconciliation.

    Example Usage:
        ```python
        guard = SubmissionGuard()
        with guard.hold(record.local_id) as entered:
            if not entered:
                return SyncOutcome.submit_in_progress(record)
            ...
        ```
    """

    def __init__(self):
        self._in_flight: set[str] = set()
        self._lock = Lock()

    def try_enter(self, encounter_key: str) -> bool:
        """Mark ``encounter_key`` as submitting; False if it already is."""
        with self._lock:
            if encounter_key in self._in_flight:
                return False
            self._in_flight.add(encounter_key)
            return True

    def leave(self, encounter_key: str) -> None:
        with self._lock:
            self._in_flight.discard(encounter_key)

    def is_in_flight(self, encounter_key: str) -> bool:
        with self._lock:
            return encounter_key in self._in_flight

    @contextmanager
    def hold(self, encounter_key: str) -> Iterator[bool]:
        """Context manager form; yields whether the guard was entered."""
        entered = self.try_enter(encounter_key)
        try:
            yield entered
        finally:
            if entered:
                self.leave(encounter_key)


@dataclass
class CircuitBreakerConfig:
    """Configuration for CircuitBreaker behavior.

    Attributes:
        failure_threshold_percent: Percentage of failures that triggers circuit open (0-100)
        window_size: Number of results to evaluate in the sliding window
        min_records_before_check: Minimum results recorded before checking threshold
        abort_on_open: If True, raise CircuitBreakerOpenError when threshold exceeded
                      If False, only log warnings and continue
    """
    failure_threshold_percent: float = 50.0
    window_size: int = 20
    min_records_before_check: int = 3
    abort_on_open: bool = True


class CircuitBreakerOpenError(Exception):
    """Raised when CircuitBreaker opens due to excessive failures.

    Attributes:
        failure_rate: The calculated failure rate percentage
        threshold: The configured threshold that was exceeded
        records_processed: Number of results recorded when circuit opened
        failures: Number of failures when circuit opened
    """

    def __init__(
        self,
        message: str,
        failure_rate: float,
        threshold: float,
        records_processed: int,
        failures: int
    ):
        super().__init__(message)
        self.failure_rate = failure_rate
        self.threshold = threshold
        self.records_processed = records_processed
        self.failures = failures


class CircuitBreaker:
    """Circuit Breaker for monitoring remote sync failure rates.

    Uses a sliding window over the most recent results. Once at least
    ``min_records_before_check`` results are recorded and the failure rate
    in the window reaches the threshold, the circuit opens.

    Example Usage:
        ```python
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold_percent=50.0))
        for envelope in store.list_pending():
            result = await replay(envelope)
            breaker.record_result(result)
        ```
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        """Initialize CircuitBreaker.

        Parameters:
            config: CircuitBreaker configuration (uses defaults if None)
        """
        self.config = config or CircuitBreakerConfig()
        self._results: list[bool] = []  # True for success, False for failure
        self._lock = Lock()
        self._is_open = False
        self._total_processed = 0
        self._total_failures = 0

    def record_result(self, result: Result) -> None:
        """Record a result and check if circuit should open.

        Parameters:
            result: Result of one remote sync attempt

        Raises:
            CircuitBreakerOpenError: If abort_on_open=True and threshold exceeded
        """
        with self._lock:
            is_success = result.is_success()
            self._results.append(is_success)
            self._total_processed += 1
            if not is_success:
                self._total_failures += 1

            while len(self._results) > self.config.window_size:
                self._results.pop(0)

            if self._total_processed >= self.config.min_records_before_check:
                self._check_threshold()

    def _check_threshold(self) -> None:
        failures_in_window = sum(1 for r in self._results if not r)
        total_in_window = len(self._results)
        failure_rate = (failures_in_window / total_in_window) * 100.0

        if failure_rate >= self.config.failure_threshold_percent:
            if not self._is_open:
                self._is_open = True

                logger.error(
                    f"CircuitBreaker OPEN: Failure rate {failure_rate:.1f}% "
                    f"exceeds threshold {self.config.failure_threshold_percent}% "
                    f"(failures: {failures_in_window}/{total_in_window} in window, "
                    f"total: {self._total_failures}/{self._total_processed})"
                )

                if self.config.abort_on_open:
                    raise CircuitBreakerOpenError(
                        f"CircuitBreaker opened: {failure_rate:.1f}% failure rate "
                        f"exceeds threshold {self.config.failure_threshold_percent}%",
                        failure_rate=failure_rate,
                        threshold=self.config.failure_threshold_percent,
                        records_processed=self._total_processed,
                        failures=self._total_failures
                    )
        elif self._is_open:
            self._is_open = False
            logger.info(
                f"CircuitBreaker CLOSED: Failure rate {failure_rate:.1f}% "
                f"is below threshold {self.config.failure_threshold_percent}%"
            )

    def get_statistics(self) -> dict:
        """Get current statistics about the circuit breaker.

        Returns:
            dict: is_open, totals, window contents, failure rate and threshold
        """
        with self._lock:
            failures_in_window = sum(1 for r in self._results if not r)
            total_in_window = len(self._results)
            failure_rate = (failures_in_window / total_in_window * 100.0) if total_in_window > 0 else 0.0

            return {
                'is_open': self._is_open,
                'total_processed': self._total_processed,
                'total_failures': self._total_failures,
                'window_size': self.config.window_size,
                'records_in_window': total_in_window,
                'failures_in_window': failures_in_window,
                'failure_rate': failure_rate,
                'threshold': self.config.failure_threshold_percent,
                'min_records_before_check': self.config.min_records_before_check,
            }
