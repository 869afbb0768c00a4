"""Circuit breaker and retry helpers for embedding/LLM calls.

Usage:
    breaker = CircuitBreaker(name="llm")
    text = call_with_resilience(lambda: client.chat(msgs), breaker=breaker,
                                retry=RetryPolicy(), cancel=cancel)
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TypeVar

from .errors import OperationCancelled, ServiceUnavailableError, TransientError
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"  # requests pass, outcomes are sampled
    OPEN = "open"  # requests rejected until the cool-down ends
    HALF_OPEN = "half_open"  # exactly one trial request in flight


class CircuitBreaker:
    """Thread-safe circuit breaker with a rolling failure-ratio window.

    The circuit opens when, within the last ``window_s`` seconds, at least
    ``min_samples`` calls were recorded and the failure ratio reached
    ``failure_ratio``. After ``cooldown_s`` one trial call is admitted; its
    success closes the circuit, its failure reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_ratio: float = 0.5,
        window_s: float = 60.0,
        min_samples: int = 10,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_ratio = float(failure_ratio)
        self.window_s = float(window_s)
        self.min_samples = int(min_samples)
        self.cooldown_s = float(cooldown_s)
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._samples: deque[tuple[float, bool]] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def retry_after(self) -> float:
        """Seconds until the circuit will admit a trial call (0 if not open)."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            return max(0.0, self.cooldown_s - (self._clock() - self._opened_at))

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.cooldown_s:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info("circuit_breaker_half_open", name=self.name, elapsed_s=round(elapsed, 2))
                return True

            # HALF_OPEN: only the single trial call may pass.
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._samples.clear()
                self._trial_in_flight = False
                self._opened_at = None
                logger.info("circuit_breaker_closed", name=self.name)
                return
            self._add_sample(True)

    def record_failure(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                logger.warning("circuit_breaker_reopened", name=self.name)
                return
            self._add_sample(False)
            total = len(self._samples)
            failures = sum(1 for _, ok in self._samples if not ok)
            if total >= self.min_samples and failures / total >= self.failure_ratio:
                self._open()
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failures=failures,
                    samples=total,
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._samples.clear()
            self._opened_at = None
            self._trial_in_flight = False

    def _add_sample(self, ok: bool) -> None:
        now = self._clock()
        self._samples.append((now, ok))
        cutoff = now - self.window_s
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self._samples.clear()

    def __repr__(self) -> str:
        with self._lock:
            return f"CircuitBreaker(name={self.name!r}, state={self._state.value}, samples={len(self._samples)})"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 8.0

    def delay(self, attempt: int) -> float:
        # attempt is 0-based
        return min(self.base_delay_s * (2**attempt), self.max_delay_s)


def raise_if_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("operation cancelled")


def call_with_resilience(
    fn: Callable[[], T],
    *,
    breaker: CircuitBreaker | None = None,
    retry: RetryPolicy | None = None,
    cancel: threading.Event | None = None,
) -> T:
    """Run ``fn`` behind the breaker, retrying ``TransientError`` with back-off.

    Non-transient exceptions propagate after being recorded as failures.
    Exhausted retries become ``ServiceUnavailableError``.
    """
    retry = retry or RetryPolicy()
    name = breaker.name if breaker is not None else "dependency"
    last: TransientError | None = None

    for attempt in range(max(1, retry.attempts)):
        raise_if_cancelled(cancel)
        if breaker is not None and not breaker.allow_request():
            raise ServiceUnavailableError(name, "circuit open", retry_after=breaker.retry_after())

        try:
            result = fn()
        except TransientError as e:
            if breaker is not None:
                breaker.record_failure()
            last = e
            if attempt + 1 >= retry.attempts:
                break
            delay = retry.delay(attempt)
            logger.warning(
                "transient_failure_retrying",
                service=name,
                attempt=attempt + 1,
                delay_s=delay,
                error=str(e),
            )
            if cancel is not None:
                if cancel.wait(delay):
                    raise OperationCancelled("operation cancelled") from e
            else:
                time.sleep(delay)
            continue
        except OperationCancelled:
            raise
        except Exception:
            if breaker is not None:
                breaker.record_failure()
            raise

        if breaker is not None:
            breaker.record_success()
        return result

    raise ServiceUnavailableError(
        name,
        f"retries exhausted ({last})",
        retry_after=retry.max_delay_s,
    ) from last
