"""
Unit Tests: Retry Executor and Rate Limiter

Tests:
    - Backoff growth, cap and jitter bounds
    - Retry classification and propagation of the original error
    - Non-idempotent calls run once
    - Concurrency bound per category, idempotent permit release
    - Token bucket and fixed window pacing
"""

import asyncio
import random

import pytest
from botocore.exceptions import EndpointConnectionError

from cloudcore.core.errors import CloudCoreError
from cloudcore.observability.metrics import EngineMetrics
from cloudcore.reliability.rate_limiter import (
    FixedWindow,
    OperationCategory,
    RateLimiter,
    RateLimitPolicy,
    TokenBucket,
)
from cloudcore.reliability.retry import RetryPolicy, calculate_backoff, with_retry
from cloudcore.storage.backends import client_error
from tests.conftest import BUCKET


class Flaky:
    """Fails with the given errors, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def throttled():
    return client_error("SlowDown", status=503, operation="PutObject")


class TestBackoff:
    """Tests for backoff computation."""

    def test_exponential_without_jitter(self):
        """Test delays double from the base and stop at the cap."""
        policy = RetryPolicy(base_delay_ms=200, max_delay_ms=1000, jitter_fraction=0.0)

        delays = [calculate_backoff(n, policy) for n in range(5)]

        assert delays == [200, 400, 800, 1000, 1000]

    def test_jitter_bounds(self):
        """Test every delay lies in [0, max * (1 + jitter)]."""
        policy = RetryPolicy(base_delay_ms=200, max_delay_ms=10_000, jitter_fraction=0.2)
        rng = random.Random(7)

        for attempt in range(20):
            for _ in range(50):
                delay = calculate_backoff(attempt, policy, rng)
                assert 0 <= delay <= policy.max_backoff_ms

    def test_jitter_is_symmetric(self):
        """Test jitter spreads around the nominal delay."""
        policy = RetryPolicy(base_delay_ms=1000, max_delay_ms=1000, jitter_fraction=0.5)
        rng = random.Random(1)

        delays = [calculate_backoff(0, policy, rng) for _ in range(500)]

        assert min(delays) < 1000 < max(delays)
        assert all(500 <= d <= 1500 for d in delays)

    def test_policy_validation(self):
        """Test invalid policies are refused."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_ms=500, max_delay_ms=100)
        with pytest.raises(ValueError):
            RetryPolicy(jitter_fraction=1.0)


class TestClassification:
    """Tests for transient error detection."""

    def test_transient_errors(self):
        """Test throttling, 5xx and transport errors are retryable."""
        policy = RetryPolicy()

        assert policy.is_retryable(throttled())
        assert policy.is_retryable(client_error("InternalError", status=500))
        assert policy.is_retryable(client_error("Whatever", status=429))
        assert policy.is_retryable(EndpointConnectionError(endpoint_url="https://s3"))
        assert policy.is_retryable(asyncio.TimeoutError())

    def test_permanent_errors(self):
        """Test store-reported permanent errors are not retried."""
        policy = RetryPolicy()

        assert not policy.is_retryable(client_error("AccessDenied", status=403))
        assert not policy.is_retryable(client_error("NoSuchKey", status=404))
        assert not policy.is_retryable(ValueError("bad"))

    def test_engine_errors_never_retried(self):
        """Test engine errors are final."""
        assert not RetryPolicy().is_retryable(CloudCoreError.not_initialized("x"))


class TestWithRetry:
    """Tests for the retry executor."""

    @pytest.mark.asyncio()
    async def test_succeeds_after_transient_failures(self):
        """Test transient failures are retried until success."""
        op = Flaky(throttled(), throttled())
        sleeps = Sleeps()
        metrics = EngineMetrics()

        result = await with_retry(
            op, RetryPolicy(), op_name="put_object", metrics=metrics, sleep=sleeps,
        )

        assert result == "ok"
        assert op.calls == 3
        assert len(sleeps.delays) == 2
        assert metrics.retries.get(operation="put_object") == 2

    @pytest.mark.asyncio()
    async def test_exhaustion_raises_last_original_error(self):
        """Test the last error propagates unchanged after max attempts."""
        errors = [throttled(), throttled(), throttled()]
        op = Flaky(*errors)

        with pytest.raises(type(errors[2])) as exc_info:
            await with_retry(op, RetryPolicy(), op_name="put_object", sleep=Sleeps())

        assert exc_info.value is errors[2]
        assert op.calls == 3

    @pytest.mark.asyncio()
    async def test_permanent_error_not_retried(self):
        """Test non-retryable errors fail on the first attempt."""
        denied = client_error("AccessDenied", status=403)
        op = Flaky(denied)
        sleeps = Sleeps()

        with pytest.raises(type(denied)):
            await with_retry(op, RetryPolicy(), op_name="get_object", sleep=sleeps)

        assert op.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio()
    async def test_non_idempotent_runs_once(self):
        """Test idempotent=False disables retries."""
        op = Flaky(throttled())

        with pytest.raises(type(throttled())):
            await with_retry(
                op, RetryPolicy(), op_name="create_multipart_upload",
                idempotent=False, sleep=Sleeps(),
            )

        assert op.calls == 1

    @pytest.mark.asyncio()
    async def test_on_retry_observer(self):
        """Test the observer sees each retry with its delay."""
        events = []
        op = Flaky(throttled())
        policy = RetryPolicy(base_delay_ms=100, max_delay_ms=100, jitter_fraction=0.0)

        await with_retry(op, policy, op_name="list", on_retry=events.append, sleep=Sleeps())

        assert len(events) == 1
        assert events[0].attempt == 1
        assert events[0].delay_ms == 100
        assert events[0].op_name == "list"

    @pytest.mark.asyncio()
    async def test_sleep_receives_seconds(self):
        """Test delays are passed to sleep in seconds."""
        sleeps = Sleeps()
        policy = RetryPolicy(base_delay_ms=250, max_delay_ms=250, jitter_fraction=0.0)

        await with_retry(Flaky(throttled()), policy, op_name="op", sleep=sleeps)

        assert sleeps.delays == [0.25]


class TestRateLimiter:
    """Tests for per-category limiting."""

    @pytest.mark.asyncio()
    async def test_concurrency_bound(self):
        """Test no more than max_concurrent permits are held at once."""
        limiter = RateLimiter({
            OperationCategory.UPLOAD: RateLimitPolicy.token_bucket(1000, 1000.0, max_concurrent=3),
        })
        active = 0
        peak = 0

        async def job():
            nonlocal active, peak
            async with limiter.acquire(OperationCategory.UPLOAD):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(job() for _ in range(10)))

        assert peak == 3
        assert limiter.bucket(OperationCategory.UPLOAD).in_flight == 0
        assert limiter.snapshot()[OperationCategory.UPLOAD].granted == 10

    @pytest.mark.asyncio()
    async def test_categories_are_independent(self):
        """Test a saturated category does not block another."""
        limiter = RateLimiter({
            OperationCategory.COPY: RateLimitPolicy.token_bucket(10, 10.0, max_concurrent=1),
        })

        async with limiter.acquire(OperationCategory.COPY):
            async with limiter.acquire(OperationCategory.LIST) as permit:
                assert permit.category is OperationCategory.LIST

    @pytest.mark.asyncio()
    async def test_release_is_idempotent(self):
        """Test releasing a permit twice frees one slot only."""
        limiter = RateLimiter({
            OperationCategory.DELETE: RateLimitPolicy.token_bucket(10, 10.0, max_concurrent=2),
        })
        bucket = limiter.bucket(OperationCategory.DELETE)

        first = await bucket.acquire()
        second = await bucket.acquire()
        first.release()
        first.release()

        assert first.released
        assert bucket.in_flight == 1
        second.release()
        assert bucket.in_flight == 0

    @pytest.mark.asyncio()
    async def test_permit_released_on_error(self):
        """Test the context manager releases when the block raises."""
        limiter = RateLimiter()

        with pytest.raises(RuntimeError):
            async with limiter.acquire(OperationCategory.STAT):
                raise RuntimeError("boom")

        assert limiter.bucket(OperationCategory.STAT).in_flight == 0

    @pytest.mark.asyncio()
    async def test_inflight_gauge(self):
        """Test held permits are visible in the metrics."""
        metrics = EngineMetrics()
        limiter = RateLimiter(metrics=metrics)

        async with limiter.acquire(OperationCategory.LIST):
            assert metrics.inflight.get(category="list") == 1
        assert metrics.inflight.get(category="list") == 0

    def test_policy_validation(self):
        """Test invalid limits are refused."""
        with pytest.raises(ValueError):
            RateLimitPolicy(max_concurrent=0)
        with pytest.raises(ValueError):
            RateLimitPolicy.token_bucket(10, 0)


class TestPacing:
    """Tests for token bucket and fixed window pacing."""

    def test_token_bucket(self):
        """Test burst, then waits computed from the refill rate."""
        now = [0.0]
        bucket = TokenBucket(rate=2.0, capacity=2, clock=lambda: now[0])

        assert bucket.reserve() == 0.0
        assert bucket.reserve() == 0.0
        assert bucket.reserve() == pytest.approx(0.5)

        now[0] = 0.5
        assert bucket.reserve() == 0.0

    def test_token_bucket_caps_at_capacity(self):
        """Test idle time does not accumulate beyond capacity."""
        now = [0.0]
        bucket = TokenBucket(rate=10.0, capacity=3, clock=lambda: now[0])

        now[0] = 100.0
        assert bucket.available == 3

    def test_fixed_window(self):
        """Test at most limit grants per window."""
        now = [0.0]
        window = FixedWindow(limit=2, window=1.0, clock=lambda: now[0])

        assert window.reserve() == 0.0
        assert window.reserve() == 0.0
        assert window.reserve() == pytest.approx(1.0)

        now[0] = 1.0
        assert window.reserve() == 0.0

    @pytest.mark.asyncio()
    async def test_bucket_waits_for_tokens(self):
        """Test acquire sleeps until the pacer grants."""
        limiter = RateLimiter({
            OperationCategory.LIST: RateLimitPolicy.token_bucket(1, 50.0, max_concurrent=5),
        })
        loop = asyncio.get_running_loop()

        start = loop.time()
        for _ in range(3):
            async with limiter.acquire(OperationCategory.LIST):
                pass
        elapsed = loop.time() - start

        assert elapsed >= 0.03


class TestStoreContextCall:
    """Tests for permits and retries around store calls."""

    @pytest.mark.asyncio()
    async def test_permit_per_attempt(self, store, ctx):
        """Test each retry takes a fresh permit and none is held while backing off."""
        held_during_backoff = []
        ctx.on_retry = lambda event: held_during_backoff.append(
            ctx.limiter.snapshot()[OperationCategory.UPLOAD].in_flight
        )
        store.inject("put_object", "SlowDown", times=2)

        await ctx.call(
            OperationCategory.UPLOAD,
            "put_object",
            lambda s3: s3.put_object(Bucket=BUCKET, Key="a.txt", Body=b"x"),
        )

        snapshot = ctx.limiter.snapshot()[OperationCategory.UPLOAD]
        assert held_during_backoff == [0, 0]
        assert snapshot.granted == 3
        assert snapshot.in_flight == 0
        assert store.objects["a.txt"].data == b"x"

    @pytest.mark.asyncio()
    async def test_without_permit(self, store, ctx):
        """Test permit=False leaves the limiter untouched."""
        await ctx.call(
            OperationCategory.DOWNLOAD,
            "put_object",
            lambda s3: s3.put_object(Bucket=BUCKET, Key="a.txt", Body=b"x"),
            permit=False,
        )

        assert ctx.limiter.snapshot()[OperationCategory.DOWNLOAD].granted == 0
