"""
Reliability module: Retry executor and per-category rate limiting.
"""

from cloudcore.reliability.retry import (
    RetryAttempt,
    RetryPolicy,
    calculate_backoff,
    with_retry,
)
from cloudcore.reliability.rate_limiter import (
    DEFAULT_RATE_LIMITS,
    OperationCategory,
    Permit,
    RateLimiter,
    RateLimitPolicy,
)

__all__ = [
    "RetryPolicy",
    "RetryAttempt",
    "calculate_backoff",
    "with_retry",
    "OperationCategory",
    "RateLimiter",
    "RateLimitPolicy",
    "Permit",
    "DEFAULT_RATE_LIMITS",
]
