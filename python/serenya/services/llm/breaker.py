"""Circuit breaker for LLM provider calls.

States:
    closed     calls pass through; provider failures are counted
    open       calls fail fast with LLMError(SERVICE_UNAVAILABLE)
    half_open  after the recovery window, trial calls pass through;
               3 successes close the circuit, any failure reopens it

Counting:
- A success resets the failure count
- Throttling counts as two failures
- INVALID_DOCUMENT is a problem with the input, not the provider, and is
  never counted
- The circuit opens once the count reaches failure_threshold

One breaker is shared by every call a client makes within a process. It is
best-effort and per-process like the data-key cache: a fresh worker starts
closed.
"""

import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from serenya.logging import get_logger
from serenya.services.llm.errors import LLMError, LLMErrorClass

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT_S = 60.0
DEFAULT_SUCCESS_THRESHOLD = 3

UNCOUNTED_ERRORS = frozenset({LLMErrorClass.INVALID_DOCUMENT})
DOUBLE_WEIGHT_ERRORS = frozenset({LLMErrorClass.RATE_LIMITED})


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Thread-safe circuit breaker.

    Args:
        failure_threshold: Counted failures that open the circuit.
        recovery_timeout_s: Seconds the circuit stays open before trial calls.
        success_threshold: Trial successes needed to close the circuit.
        clock: Monotonic clock returning seconds (injectable for tests).
        name: Label used in log events.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout_s: float = DEFAULT_RECOVERY_TIMEOUT_S,
        success_threshold: int = DEFAULT_SUCCESS_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        name: str = "bedrock",
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if recovery_timeout_s <= 0:
            raise ValueError("recovery_timeout_s must be > 0")
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self.success_threshold = success_threshold
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        """Current state; an open circuit past its window reports half_open."""
        with self._lock:
            self._maybe_half_open()
            return self._state

    def call(self, fn: Callable[[], T]) -> T:
        """Run fn through the breaker.

        Raises:
            LLMError(SERVICE_UNAVAILABLE): If the circuit is open.
            LLMError: Whatever fn raises, after it has been counted.
        """
        self._before_call()
        try:
            result = fn()
        except LLMError as e:
            self.record_failure(e.error_class)
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            if self._state != CircuitState.HALF_OPEN:
                return
            self._trial_successes += 1
            if self._trial_successes >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._trial_successes = 0
                self._opened_at = None
                logger.info("circuit_closed", breaker=self.name)

    def record_failure(self, error_class: LLMErrorClass) -> None:
        if error_class in UNCOUNTED_ERRORS:
            return
        with self._lock:
            self._failures += 2 if error_class in DOUBLE_WEIGHT_ERRORS else 1
            if (
                self._state == CircuitState.HALF_OPEN
                or self._failures >= self.failure_threshold
            ):
                self._open(error_class)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "state": self._state.value,
                "failures": self._failures,
                "trial_successes": self._trial_successes,
            }

    def _before_call(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state != CircuitState.OPEN:
                return
            retry_after = self.recovery_timeout_s - (self._clock() - self._opened_at)
        logger.warning("circuit_open_call_blocked", breaker=self.name)
        raise LLMError(
            LLMErrorClass.SERVICE_UNAVAILABLE,
            detail=f"circuit_open retry_after={max(0, int(retry_after))}s",
        )

    def _maybe_half_open(self) -> None:
        # Caller holds the lock
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.recovery_timeout_s
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_successes = 0
            logger.info("circuit_half_open", breaker=self.name)

    def _open(self, error_class: LLMErrorClass) -> None:
        # Caller holds the lock
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_successes = 0
        logger.error(
            "circuit_opened",
            breaker=self.name,
            failures=self._failures,
            error_class=error_class.value,
        )
