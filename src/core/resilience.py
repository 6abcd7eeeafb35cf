"""Retry and circuit breaking around external calls.

Every call to an external dependency (virtual machine provider, DNS provider,
remote shell, object storage, metrics backend) goes through ``resilient``:
the dependency's circuit breaker is consulted first, then the call is retried
with exponential backoff while the failure looks transient.
"""
import functools
import logging
import time
from enum import Enum
from typing import Callable

import asyncssh
import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.config import settings

logger = logging.getLogger(__name__)

TRANSIENT_MESSAGES = (
    "connection refused",
    "connection reset",
    "timed out",
    "timeout",
    "no route to host",
    "network is unreachable",
    "temporarily unavailable",
    "broken pipe",
)


class NonRetryableError(Exception):
    """Base for failures that must never be retried."""
    pass


class CircuitOpenError(NonRetryableError):
    """Raised when a call is refused because the dependency's breaker is open."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{name}' is open, retry in {retry_after:.0f}s"
        )


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Per-dependency circuit breaker.

    closed: calls pass, consecutive transient failures are counted
    open: calls are refused until reset_timeout has elapsed
    half_open: a single trial call is let through; success closes the
        breaker, failure opens it again
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        if (
            self._state == BreakerState.OPEN
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def before_call(self) -> bool:
        """Gate a call. Returns True when it is the half-open trial.

        Raises CircuitOpenError if it must not proceed.
        """
        state = self.state
        if state == BreakerState.OPEN:
            remaining = self.reset_timeout - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.name, max(remaining, 0.0))
        if state == BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True
            return True
        return False

    def end_trial(self) -> None:
        """Let the next call through when a trial ended without a verdict."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        if self._state != BreakerState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed")
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != BreakerState.OPEN:
                logger.warning(
                    f"Circuit '{self.name}' opened after {self._failures} failures"
                )
            self._state = BreakerState.OPEN
            self._opened_at = self._clock()
            self._trial_in_flight = False

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._trial_in_flight = False


_breakers: dict[str, CircuitBreaker] = {}


def get_breaker(name: str) -> CircuitBreaker:
    """Get the breaker for an external dependency, creating it on first use."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(
            name,
            failure_threshold=settings.resilience.failure_threshold,
            reset_timeout=settings.resilience.reset_timeout,
        )
        _breakers[name] = breaker
    return breaker


def reset_breakers() -> None:
    """Forget all breaker state."""
    _breakers.clear()


def is_transient(exc: BaseException) -> bool:
    """Decide whether a failed external call is worth retrying."""
    if isinstance(exc, NonRetryableError):
        return False
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    if isinstance(exc, (httpx.TransportError, asyncssh.ConnectionLost, TimeoutError, OSError)):
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


async def call_with_resilience(
    name: str,
    func: Callable,
    *args,
    max_attempts: int | None = None,
    **kwargs,
):
    """Invoke ``func`` behind the named breaker with retry on transient errors."""
    breaker = get_breaker(name)
    cfg = settings.resilience

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts or cfg.max_attempts),
        wait=wait_exponential(multiplier=cfg.backoff_base, max=cfg.backoff_max),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            trial = breaker.before_call()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                # A non-transient error still proves the dependency answered
                if is_transient(e):
                    breaker.record_failure()
                else:
                    breaker.record_success()
                raise
            finally:
                # Cancellation records nothing
                if trial:
                    breaker.end_trial()
            breaker.record_success()
            return result


def resilient(name: str, max_attempts: int | None = None):
    """Decorator applying ``call_with_resilience`` to an async method or function."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await call_with_resilience(
                name, func, *args, max_attempts=max_attempts, **kwargs
            )

        return wrapper

    return decorator
