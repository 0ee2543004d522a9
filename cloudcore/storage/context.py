"""
Store Context: What Every Engine Shares

One StoreContext per BucketClient. It holds the store client (None
until connected), the bucket name, the rate limiter, per-category
retry policies, the transfer/presign settings and the metrics.

call() (or run() for the identity client) is the only path to the
store:

    retry executor -> permit (rate limiter) -> store method, per attempt

It raises the store's own exception after retries; engines turn it
into a CloudCoreError with StoreError.from_exception().
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from cloudcore.core.config import PresignConfig, ReliabilityConfig, TransferConfig
from cloudcore.core.errors import CloudCoreError
from cloudcore.core.types import Err, Result
from cloudcore.observability.logging import log_context
from cloudcore.observability.metrics import EngineMetrics
from cloudcore.reliability.rate_limiter import OperationCategory, RateLimiter
from cloudcore.reliability.retry import RetryAttempt, with_retry
from cloudcore.storage.protocols import ObjectStoreClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StoreContext:
    bucket: str
    client: Optional[ObjectStoreClient] = None
    transfer: TransferConfig = field(default_factory=TransferConfig)
    presign: PresignConfig = field(default_factory=PresignConfig)
    reliability: ReliabilityConfig = field(default_factory=ReliabilityConfig)
    metrics: EngineMetrics = field(default_factory=EngineMetrics)
    limiter: Optional[RateLimiter] = None
    on_retry: Optional[Callable[[RetryAttempt], None]] = None

    def __post_init__(self) -> None:
        if self.limiter is None:
            self.limiter = RateLimiter(self.reliability.rate_limits, self.metrics)

    @property
    def connected(self) -> bool:
        return self.client is not None

    def require_client(self, operation: str) -> ObjectStoreClient:
        """
        Raises:
            CloudCoreError: NOT_INITIALIZED when no client is attached
        """
        if self.client is None:
            raise CloudCoreError.not_initialized(operation)
        return self.client

    async def call(
        self,
        category: OperationCategory,
        op_name: str,
        fn: Callable[[ObjectStoreClient], Awaitable[T]],
        *,
        idempotent: bool = True,
        permit: bool = True,
    ) -> T:
        """
        Run one store request with retries, each attempt under a permit.

        ``permit=False`` is for callers already holding a permit of
        ``category`` for a longer span (a streamed download body).
        """
        client = self.require_client(op_name)
        return await self.run(
            category, op_name, lambda: fn(client), idempotent=idempotent, permit=permit,
        )

    async def run(
        self,
        category: OperationCategory,
        op_name: str,
        operation: Callable[[], Awaitable[T]],
        *,
        idempotent: bool = True,
        permit: bool = True,
    ) -> T:
        """
        Retry ``operation`` with the category's policy.

        Every attempt takes its own permit; backoff sleeps hold none.
        """
        assert self.limiter is not None
        limiter = self.limiter

        async def attempt() -> T:
            if not permit:
                return await operation()
            async with limiter.acquire(category):
                return await operation()

        return await with_retry(
            attempt,
            self.reliability.retry_policy(category),
            op_name=op_name,
            idempotent=idempotent,
            on_retry=self.on_retry,
            metrics=self.metrics,
        )


def instrumented(operation: str) -> Callable[
    [Callable[..., Awaitable[Result[Any, CloudCoreError]]]],
    Callable[..., Awaitable[Result[Any, CloudCoreError]]],
]:
    """
    Decorate an engine coroutine returning a Result.

    Adds operation/bucket log context, latency and outcome metrics,
    and turns a CloudCoreError raised inside into Err.
    """

    def decorator(
        func: Callable[..., Awaitable[Result[Any, CloudCoreError]]],
    ) -> Callable[..., Awaitable[Result[Any, CloudCoreError]]]:
        @functools.wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Result[Any, CloudCoreError]:
            ctx: StoreContext = self.ctx
            start = time.perf_counter()
            with log_context(operation=operation, bucket=ctx.bucket):
                try:
                    result = await func(self, *args, **kwargs)
                except CloudCoreError as e:
                    result = Err(e)
                if result.is_err():
                    logger.warning(f"{operation} failed: {result.error}")
            ctx.metrics.latency.observe(time.perf_counter() - start, operation=operation)
            ctx.metrics.record_outcome(operation, result.is_ok())
            return result

        return wrapper

    return decorator
