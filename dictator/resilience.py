"""
Dictator Resilience Infrastructure

Retry and polling primitives for talking to remote resources whose state
converges asynchronously. Two patterns live here:

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        RESILIENCE PATTERNS                               │
    │                                                                          │
    │  Retry Policy                      Condition Poller                      │
    │  ├─ Fixed / Linear                 ├─ Sequential predicate polling      │
    │  ├─ Exponential (+ jitter)         ├─ Fixed or exponential interval     │
    │  ├─ Max attempts                   ├─ Deadline (monotonic clock)        │
    │  └─ Retryable exceptions           ├─ Transient read failure budget     │
    │                                    └─ Cancellation signal               │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Transient transport hiccups are absorbed inside the poller's failure budget
and never surface. Once the budget is exhausted the poller escalates to a
fatal TransportError. A predicate that never becomes true surfaces as
TimeoutError no later than the timeout plus one poll interval. Read retries
made while a predicate is evaluated run inside the same window: they sleep on
the poller's clock and give up at its deadline or on cancellation.

Usage
─────

    from dictator.resilience import ConditionPoller

    poller = ConditionPoller(poll_interval_seconds=2.0, timeout_seconds=600.0)
    poller.await_condition(
        lambda: dictator.read("currentStep") == 3,
        description="MigrationSystemDictator.currentStep == 3",
    )

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import random
import threading
import time
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════════════════
# ERRORS
# ════════════════════════════════════════════════════════════════════════════


class TransportError(Exception):
    """Raised when a remote read or write failed after bounded local retries."""
    def __init__(
        self,
        resource: str,
        operation: str,
        cause: Optional[BaseException] = None,
        message: str = "",
    ):
        self.resource = resource
        self.operation = operation
        self.cause = cause
        super().__init__(
            message or f"Transport failure on {resource}.{operation}: {cause}"
        )


class TimeoutError(Exception):
    """Raised when a polled condition does not hold before its deadline."""
    def __init__(self, operation: str, timeout_seconds: float, cancelled: bool = False):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.cancelled = cancelled
        if cancelled:
            message = f"Waiting for '{operation}' was cancelled"
        else:
            message = f"Operation '{operation}' timed out after {timeout_seconds}s"
        super().__init__(message)


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


# Exceptions a read may raise that mean "not yet", never "wrong".
TRANSIENT_EXCEPTIONS = (TransportError, ConnectionError, OSError)


@dataclass(frozen=True)
class PollWindow:
    """
    Time left to the poll that is evaluating a predicate right now.

    Retries made from inside the predicate wait on the poller's clock and
    sleep, stop at its deadline and honour its cancel signal.
    """
    deadline_at: float
    clock: Callable[[], float]
    pause: Callable[[float], None]
    cancelled: Callable[[], bool]

    @property
    def remaining(self) -> float:
        return max(0.0, self.deadline_at - self.clock())

    @property
    def closed(self) -> bool:
        return self.cancelled() or self.remaining <= 0


poll_window_var: ContextVar[Optional[PollWindow]] = ContextVar("dictator_poll_window", default=None)


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Delay growth between attempts."""
    FIXED = auto()               # Fixed delay between attempts
    LINEAR = auto()              # Linear increase
    EXPONENTIAL = auto()         # Exponential backoff (2^n)
    EXPONENTIAL_JITTER = auto()  # Exponential with random jitter


def compute_delay(
    strategy: BackoffStrategy,
    base: float,
    attempt: int,
    max_delay: float,
    jitter_factor: float = 0.5,
) -> float:
    """Delay before the attempt following ``attempt`` (1-based)."""
    if strategy == BackoffStrategy.FIXED:
        delay = base
    elif strategy == BackoffStrategy.LINEAR:
        delay = base * attempt
    elif strategy == BackoffStrategy.EXPONENTIAL:
        delay = base * (2 ** (attempt - 1))
    elif strategy == BackoffStrategy.EXPONENTIAL_JITTER:
        exp_delay = base * (2 ** (attempt - 1))
        delay = exp_delay + random.uniform(0, jitter_factor * exp_delay)
    else:
        delay = base

    return min(delay, max_delay)


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5
    retryable_exceptions: tuple = TRANSIENT_EXCEPTIONS


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryPolicy:
    """
    Retry policy for remote reads.

    Only exceptions listed in ``retryable_exceptions`` are retried; anything
    else propagates on the first occurrence.

    Example:
        retry = RetryPolicy(max_attempts=3, base_delay_seconds=0.1)
        owner = retry.execute(lambda: client.read_property("ProxyAdmin", "owner"))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.5,
        max_delay_seconds: float = 10.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = TRANSIENT_EXCEPTIONS,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
            retryable_exceptions=retryable_exceptions,
        )
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()
        self._on_retry = on_retry
        self._sleep = sleep

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return RetryMetrics(
                total_attempts=self._metrics.total_attempts,
                successful_attempts=self._metrics.successful_attempts,
                failed_attempts=self._metrics.failed_attempts,
                retries_exhausted=self._metrics.retries_exhausted,
                total_retry_delay_seconds=self._metrics.total_retry_delay_seconds,
            )

    def execute(self, func: Callable[[], T]) -> T:
        """
        Execute function with retry policy.

        Inside a ConditionPoller wait, delays are cut to the poll's remaining
        time and retrying stops once that time is used up or cancelled.
        """
        last_exception: Optional[Exception] = None
        window = poll_window_var.get()
        attempts = 0

        for attempt in range(1, self.config.max_attempts + 1):
            attempts = attempt
            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result
            except Exception as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1

                if not isinstance(e, self.config.retryable_exceptions):
                    raise

                if attempt < self.config.max_attempts:
                    if window is not None and window.closed:
                        break

                    delay = compute_delay(
                        self.config.backoff_strategy,
                        self.config.base_delay_seconds,
                        attempt,
                        self.config.max_delay_seconds,
                        self.config.jitter_factor,
                    )
                    if window is not None:
                        delay = min(delay, window.remaining)
                    with self._lock:
                        self._metrics.total_retry_delay_seconds += delay

                    if self._on_retry:
                        self._on_retry(attempt, e, delay)

                    if window is not None:
                        window.pause(delay)
                    else:
                        self._sleep(delay)

        with self._lock:
            self._metrics.retries_exhausted += 1

        raise RetryExhaustedError(attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for retry protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper


# ════════════════════════════════════════════════════════════════════════════
# RUN DEADLINE
# ════════════════════════════════════════════════════════════════════════════


class RunDeadline:
    """
    Overall deadline for a sequencer run.

    Shared by every poll of the run so that no single wait can outlive it.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self.expires_at = clock() + seconds

    @property
    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at


# ════════════════════════════════════════════════════════════════════════════
# CONDITION POLLER
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class PollMetrics:
    """Outcome of a single await_condition call."""
    description: str
    polls: int = 0
    transient_failures: int = 0
    elapsed_seconds: float = 0.0


class ConditionPoller:
    """
    Repeatedly evaluates a predicate against remote state until it holds.

    Polling is strictly sequential: the predicate is never evaluated
    concurrently with itself from one call. Transient read failures count
    as "not yet true" up to ``max_transient_failures`` consecutive failures,
    after which a TransportError is raised.

    The wait ends with TimeoutError when the per-call timeout, the shared
    RunDeadline, or the cancel event fires first.
    """

    def __init__(
        self,
        poll_interval_seconds: float = 2.0,
        timeout_seconds: float = 600.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.FIXED,
        max_interval_seconds: float = 30.0,
        max_transient_failures: int = 5,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[RunDeadline] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        logger: Any = None,
    ):
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.backoff_strategy = backoff_strategy
        self.max_interval_seconds = max_interval_seconds
        self.max_transient_failures = max_transient_failures
        self.cancel_event = cancel_event
        self.deadline = deadline
        self._clock = clock
        self._sleep = sleep
        self._logger = logger

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        elif self.cancel_event is not None:
            self.cancel_event.wait(seconds)
        else:
            time.sleep(seconds)

    def await_condition(
        self,
        predicate: Callable[[], Any],
        description: str = "condition",
        poll_interval_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ) -> PollMetrics:
        """
        Block until ``predicate()`` is truthy.

        Returns the PollMetrics of the wait. Raises TimeoutError on deadline
        or cancellation and TransportError once the transient failure budget
        is exhausted.
        """
        interval = poll_interval_seconds or self.poll_interval_seconds
        timeout = timeout_seconds or self.timeout_seconds
        metrics = PollMetrics(description=description)

        start = self._clock()
        deadline_at = start + timeout
        if self.deadline is not None:
            deadline_at = min(deadline_at, self.deadline.expires_at)

        consecutive_failures = 0
        window = PollWindow(deadline_at, self._clock, self._pause, self._cancelled)

        while True:
            if self._cancelled():
                metrics.elapsed_seconds = self._clock() - start
                raise TimeoutError(description, metrics.elapsed_seconds, cancelled=True)

            metrics.polls += 1
            token = poll_window_var.set(window)
            try:
                satisfied = bool(predicate())
                consecutive_failures = 0
            except TRANSIENT_EXCEPTIONS as e:
                satisfied = False
                consecutive_failures += 1
                metrics.transient_failures += 1
                if self._logger:
                    self._logger.warning(
                        f"Transient failure while polling {description}",
                        attempt=metrics.polls,
                        consecutive_failures=consecutive_failures,
                        error=str(e),
                    )
                if consecutive_failures > self.max_transient_failures:
                    if isinstance(e, TransportError):
                        raise
                    raise TransportError(description, "poll", cause=e) from e
            finally:
                poll_window_var.reset(token)

            now = self._clock()
            metrics.elapsed_seconds = now - start

            if satisfied:
                if self._logger:
                    self._logger.debug(
                        f"Condition satisfied: {description}",
                        polls=metrics.polls,
                        elapsed_seconds=round(metrics.elapsed_seconds, 3),
                    )
                return metrics

            if now >= deadline_at:
                raise TimeoutError(description, timeout)

            delay = compute_delay(
                self.backoff_strategy,
                interval,
                metrics.polls,
                max(self.max_interval_seconds, interval),
            )
            # Never sleep past the deadline; one last evaluation happens there.
            self._pause(min(delay, deadline_at - now))


def await_condition(
    predicate: Callable[[], Any],
    poll_interval_seconds: float = 2.0,
    timeout_seconds: float = 600.0,
    description: str = "condition",
    **poller_options: Any,
) -> PollMetrics:
    """Convenience wrapper around a one-off ConditionPoller."""
    poller = ConditionPoller(
        poll_interval_seconds=poll_interval_seconds,
        timeout_seconds=timeout_seconds,
        **poller_options,
    )
    return poller.await_condition(predicate, description=description)


# ════════════════════════════════════════════════════════════════════════════
# MODULE EXPORTS
# ════════════════════════════════════════════════════════════════════════════


__all__ = [
    # Errors
    "TransportError",
    "TimeoutError",
    "RetryExhaustedError",
    "TRANSIENT_EXCEPTIONS",
    # Retry
    "BackoffStrategy",
    "compute_delay",
    "RetryConfig",
    "RetryMetrics",
    "RetryPolicy",
    # Polling
    "RunDeadline",
    "PollWindow",
    "poll_window_var",
    "PollMetrics",
    "ConditionPoller",
    "await_condition",
]
