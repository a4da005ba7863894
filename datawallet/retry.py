"""Retry, backoff and circuit breaking for calls to external systems."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import DataWalletError

logger = structlog.get_logger()

T = TypeVar("T")


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(config.retry, retryable_exceptions=(PublishError,))
        async def upload() -> str: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    After ``fail_threshold`` failures in a row the circuit opens and calls
    are rejected until the reset timeout elapses; the next call is then let
    through as a trial.  Each re-opening doubles the reset timeout up to
    ``max_reset_timeout``.
    """

    name: str
    fail_threshold: int = 5
    base_reset_timeout: float = 60.0
    max_reset_timeout: float = 600.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    consecutive_opens: int = 0
    opened_at: float | None = None

    @property
    def reset_timeout(self) -> float:
        exponent = max(self.consecutive_opens - 1, 0)
        return min(self.base_reset_timeout * (2**exponent), self.max_reset_timeout)

    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info("circuit_closed", circuit=self.name)
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.consecutive_opens = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.fail_threshold:
            if self.state != CircuitState.OPEN:
                self.consecutive_opens += 1
                logger.warning(
                    "circuit_opened",
                    circuit=self.name,
                    failures=self.failure_count,
                    reset_timeout=self.reset_timeout,
                )
            self.state = CircuitState.OPEN
            self.opened_at = self.clock()

    def is_available(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True
        assert self.opened_at is not None
        if self.clock() - self.opened_at >= self.reset_timeout:
            self.state = CircuitState.HALF_OPEN
            logger.info("circuit_half_open", circuit=self.name)
            return True
        return False


class ExternalCall:
    """Guard for one external boundary: circuit breaker around a retry loop.

    Only exceptions listed in *retryable* are retried and counted against the
    circuit; when the circuit is open the boundary's *error* class is raised
    without calling out.
    """

    def __init__(
        self,
        name: str,
        config: RetryConfig,
        *,
        error: type[DataWalletError],
        retryable: tuple[type[BaseException], ...] | None = None,
    ) -> None:
        self.name = name
        self._config = config
        self._error = error
        self._retryable = retryable or (error,)
        self.breaker = CircuitBreaker(
            name=name,
            fail_threshold=config.breaker_fail_threshold,
            base_reset_timeout=config.breaker_reset_seconds,
            max_reset_timeout=config.breaker_max_reset_seconds,
        )

    async def __call__(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if not self.breaker.is_available():
            logger.warning("external_call_rejected", boundary=self.name, reason="circuit_open")
            raise self._error(f"{self.name} unavailable: circuit open")

        @with_retry(self._config, retryable_exceptions=self._retryable)
        async def _attempt() -> T:
            try:
                result = await fn(*args, **kwargs)
            except self._retryable as exc:
                self.breaker.record_failure()
                logger.warning("external_call_failed", boundary=self.name, error=str(exc))
                raise
            self.breaker.record_success()
            return result

        return await _attempt()
