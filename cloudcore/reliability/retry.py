"""
Retry Executor: Exponential Backoff with Symmetric Jitter

Wraps a single store call:
- Exponential backoff: base × 2^attempt, capped at max_delay
- Jitter: ± jitter_fraction of the capped delay, floored at zero
- Max attempts: 3 for idempotent calls, exactly 1 otherwise

Only transient failures (throttling, timeouts, 5xx, dropped
connections) are retried. Anything else, and the last transient
failure once attempts run out, propagates to the caller unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from cloudcore.core import constants as C
from cloudcore.core.errors import (
    CloudCoreError,
    error_code_of,
    is_transport_error,
    status_code_of,
)
from cloudcore.observability.metrics import EngineMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Retry configuration for one operation category.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1).
        base_delay_ms: Delay before the first retry, before jitter.
        max_delay_ms: Cap applied before jitter.
        jitter_fraction: Symmetric jitter as a fraction of the delay, in [0, 1).
        retryable_codes: Store error codes/names treated as transient.
        retryable_status_codes: HTTP statuses treated as transient.
    """

    max_attempts: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_MS
    jitter_fraction: float = C.RETRY_JITTER_FRACTION
    retryable_codes: frozenset[str] = C.RETRYABLE_ERROR_CODES
    retryable_status_codes: frozenset[int] = C.RETRYABLE_STATUS_CODES

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms cannot be lower than base_delay_ms")
        if not 0.0 <= self.jitter_fraction < 1.0:
            raise ValueError(
                f"jitter_fraction must be in [0, 1), got {self.jitter_fraction}"
            )

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """Single attempt (for non-idempotent operations)."""
        return cls(max_attempts=1)

    @property
    def max_backoff_ms(self) -> float:
        """Upper bound of any single computed delay."""
        return self.max_delay_ms * (1.0 + self.jitter_fraction)

    def is_retryable(self, error: BaseException) -> bool:
        """
        Classify a failure as transient.

        Engine errors (validation, size, cancellation) are never
        retried; store errors are matched by code, HTTP status or
        transport exception type.
        """
        if isinstance(error, CloudCoreError):
            return False
        if is_transport_error(error):
            return True
        if error_code_of(error) in self.retryable_codes:
            return True
        return status_code_of(error) in self.retryable_status_codes


@dataclass(frozen=True, slots=True)
class RetryAttempt:
    """Emitted before each backoff sleep."""
    op_name: str
    attempt: int
    error: BaseException
    delay_ms: float


def calculate_backoff(
    attempt: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in milliseconds before retry number ``attempt`` (0-based).

    min(base * 2^attempt, max) jittered uniformly by ± jitter_fraction,
    never negative and never above max * (1 + jitter_fraction).
    """
    uniform = (rng or random).uniform
    delay = min(policy.max_delay_ms, policy.base_delay_ms * (2 ** attempt))
    spread = delay * policy.jitter_fraction
    return max(0.0, delay + uniform(-spread, spread))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    op_name: str,
    idempotent: bool = True,
    on_retry: Optional[Callable[[RetryAttempt], None]] = None,
    metrics: Optional[EngineMetrics] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Execute an async store call with retry and exponential backoff.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Retry configuration for the operation's category
        op_name: Name used in logs and metrics
        idempotent: False runs the operation exactly once
        on_retry: Observer called with each RetryAttempt before sleeping
        metrics: Engine metrics receiving retry counts
        sleep: Sleep coroutine (seconds); injectable for tests

    Returns:
        The operation's result

    Raises:
        The original exception of the last attempt, unchanged
    """
    attempts = policy.max_attempts if idempotent else 1

    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            last_attempt = attempt + 1 >= attempts
            if last_attempt or not policy.is_retryable(exc):
                if attempt > 0:
                    logger.warning(
                        f"{op_name} failed after {attempt + 1} attempts: {exc}"
                    )
                raise

            delay_ms = calculate_backoff(attempt, policy)
            event = RetryAttempt(
                op_name=op_name,
                attempt=attempt + 1,
                error=exc,
                delay_ms=delay_ms,
            )
            logger.info(
                f"Retrying {op_name} in {delay_ms:.0f}ms "
                f"(attempt {attempt + 2}/{attempts}): {error_code_of(exc)}"
            )
            if metrics is not None:
                metrics.retries.inc(operation=op_name)
            if on_retry is not None:
                on_retry(event)

            await sleep(delay_ms / 1000)

    # attempts >= 1 so the loop always returns or raises
    raise AssertionError("unreachable")
