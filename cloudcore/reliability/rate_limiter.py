"""
Rate Limiter: Per-Category Concurrency Slots and Request Pacing

Every store call runs under a Permit from the bucket of its
operation category. A bucket combines:
- A concurrency cap (asyncio.Semaphore)
- A pacing policy: token bucket (burst + refill) or fixed window

Acquisition suspends until both grant; waits sleep for the computed
time instead of polling. Buckets are the only engine state shared
between concurrent callers, and each category's bucket is independent.

Usage:
    limiter = RateLimiter()
    async with limiter.acquire(OperationCategory.UPLOAD):
        await s3.put_object(...)
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import AsyncIterator, Awaitable, Callable, Mapping, Optional, Union

from cloudcore.observability.metrics import EngineMetrics

logger = logging.getLogger(__name__)


class OperationCategory(Enum):
    """Closed set of store operation kinds, each with its own bucket."""
    LIST = "list"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"
    COPY = "copy"
    STAT = "stat"


class PacingKind(Enum):
    TOKEN_BUCKET = auto()
    FIXED_WINDOW = auto()


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """
    Limits for one operation category.

    Attributes:
        max_concurrent: Permits that may be held at once.
        capacity: Burst size (token bucket) or requests per window.
        refill_per_second: Token refill rate (token bucket only).
        window_seconds: Window length (fixed window only).
    """

    max_concurrent: int = 10
    capacity: int = 10
    refill_per_second: float = 2.0
    kind: PacingKind = PacingKind.TOKEN_BUCKET
    window_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        if self.kind is PacingKind.TOKEN_BUCKET and self.refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")
        if self.kind is PacingKind.FIXED_WINDOW and self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

    @classmethod
    def token_bucket(
        cls,
        capacity: int,
        refill_per_second: float,
        max_concurrent: Optional[int] = None,
    ) -> RateLimitPolicy:
        return cls(
            max_concurrent=max_concurrent or capacity,
            capacity=capacity,
            refill_per_second=refill_per_second,
        )

    @classmethod
    def fixed_window(
        cls,
        limit: int,
        window_seconds: float,
        max_concurrent: Optional[int] = None,
    ) -> RateLimitPolicy:
        return cls(
            max_concurrent=max_concurrent or limit,
            capacity=limit,
            kind=PacingKind.FIXED_WINDOW,
            window_seconds=window_seconds,
        )


DEFAULT_RATE_LIMITS: Mapping[OperationCategory, RateLimitPolicy] = {
    OperationCategory.LIST: RateLimitPolicy.token_bucket(10, 2),
    OperationCategory.UPLOAD: RateLimitPolicy.token_bucket(20, 5),
    OperationCategory.DOWNLOAD: RateLimitPolicy.token_bucket(30, 10),
    OperationCategory.DELETE: RateLimitPolicy.token_bucket(20, 5),
    OperationCategory.COPY: RateLimitPolicy.token_bucket(15, 3),
    OperationCategory.STAT: RateLimitPolicy.token_bucket(10, 2),
}


# =============================================================================
# PACING
# =============================================================================
class TokenBucket:
    """
    Token bucket pacing.

    Starts full; refills continuously at ``rate`` tokens per second
    up to ``capacity``.
    """

    __slots__ = ("_capacity", "_rate", "_tokens", "_last_update", "_clock")

    def __init__(
        self,
        rate: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate = rate
        self._capacity = capacity
        self._tokens = capacity
        self._clock = clock
        self._last_update = clock()

    def reserve(self, tokens: float = 1.0) -> float:
        """
        Take tokens if available.

        Returns 0.0 when granted, otherwise the seconds to wait
        before enough tokens will have accumulated.
        """
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return 0.0
        return (tokens - self._tokens) / self._rate

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_update
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_update = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens


class FixedWindow:
    """At most ``limit`` grants per ``window`` seconds."""

    __slots__ = ("_limit", "_window", "_window_start", "_count", "_clock")

    def __init__(
        self,
        limit: int,
        window: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = limit
        self._window = window
        self._clock = clock
        self._window_start = clock()
        self._count = 0

    def reserve(self, tokens: float = 1.0) -> float:
        now = self._clock()
        if now - self._window_start >= self._window:
            self._window_start = now
            self._count = 0
        if self._count + tokens <= self._limit:
            self._count += int(tokens)
            return 0.0
        return self._window_start + self._window - now

    @property
    def available(self) -> float:
        if self._clock() - self._window_start >= self._window:
            return float(self._limit)
        return float(self._limit - self._count)


# =============================================================================
# PERMITS AND BUCKETS
# =============================================================================
class Permit:
    """
    A held concurrency slot. release() is idempotent.
    """

    __slots__ = ("category", "_bucket", "_released")

    def __init__(self, bucket: RateLimitBucket) -> None:
        self.category = bucket.category
        self._bucket = bucket
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._bucket._release()

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"Permit({self.category.value}, {state})"


@dataclass(frozen=True, slots=True)
class BucketSnapshot:
    """Point-in-time view of a bucket."""
    category: OperationCategory
    in_flight: int
    max_concurrent: int
    available_tokens: float
    granted: int


class RateLimitBucket:
    """
    Limiter state for one operation category.

    Waiters for pacing queue on an asyncio.Lock, so grants are issued
    in arrival order and at most one coroutine sleeps on the pacer.
    """

    __slots__ = (
        "category", "policy", "_slots", "_pacer", "_lock",
        "_in_flight", "_granted", "_metrics", "_sleep",
    )

    def __init__(
        self,
        category: OperationCategory,
        policy: RateLimitPolicy,
        metrics: Optional[EngineMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.category = category
        self.policy = policy
        self._slots = asyncio.Semaphore(policy.max_concurrent)
        self._pacer: Union[TokenBucket, FixedWindow]
        if policy.kind is PacingKind.TOKEN_BUCKET:
            self._pacer = TokenBucket(policy.refill_per_second, policy.capacity, clock)
        else:
            self._pacer = FixedWindow(policy.capacity, policy.window_seconds, clock)
        self._lock = asyncio.Lock()
        self._in_flight = 0
        self._granted = 0
        self._metrics = metrics
        self._sleep = sleep

    async def acquire(self) -> Permit:
        """Suspend until a slot is free and the pacer grants a token."""
        await self._slots.acquire()
        try:
            await self._take_token()
        except BaseException:
            self._slots.release()
            raise

        self._in_flight += 1
        self._granted += 1
        if self._metrics is not None:
            self._metrics.inflight.inc(category=self.category.value)
        return Permit(self)

    async def _take_token(self) -> None:
        async with self._lock:
            while True:
                wait = self._pacer.reserve()
                if wait <= 0:
                    return
                logger.debug(f"Rate limit {self.category.value}: waiting {wait:.3f}s")
                await self._sleep(wait)

    def _release(self) -> None:
        self._in_flight -= 1
        self._slots.release()
        if self._metrics is not None:
            self._metrics.inflight.dec(category=self.category.value)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def snapshot(self) -> BucketSnapshot:
        return BucketSnapshot(
            category=self.category,
            in_flight=self._in_flight,
            max_concurrent=self.policy.max_concurrent,
            available_tokens=self._pacer.available,
            granted=self._granted,
        )


class RateLimiter:
    """
    One independent bucket per OperationCategory.

    Categories missing from ``policies`` use DEFAULT_RATE_LIMITS.
    """

    __slots__ = ("_buckets",)

    def __init__(
        self,
        policies: Optional[Mapping[OperationCategory, RateLimitPolicy]] = None,
        metrics: Optional[EngineMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        merged = {**DEFAULT_RATE_LIMITS, **(policies or {})}
        self._buckets = {
            category: RateLimitBucket(category, merged[category], metrics, clock)
            for category in OperationCategory
        }

    def bucket(self, category: OperationCategory) -> RateLimitBucket:
        return self._buckets[category]

    @asynccontextmanager
    async def acquire(self, category: OperationCategory) -> AsyncIterator[Permit]:
        """Hold a permit for the duration of the block."""
        permit = await self._buckets[category].acquire()
        try:
            yield permit
        finally:
            permit.release()

    def snapshot(self) -> dict[OperationCategory, BucketSnapshot]:
        return {category: b.snapshot() for category, b in self._buckets.items()}
