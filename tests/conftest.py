"""
Shared fixtures: an in-memory bucket and a client wired to it.

Sizes are scaled down (1 KiB multipart threshold, 256 B parts) so the
multipart and streaming paths run on a few bytes. Retries do not
sleep and the rate limiter never paces.
"""

import pytest

from cloudcore.client import BucketClient
from cloudcore.core.config import (
    CloudCoreConfig,
    ReliabilityConfig,
    S3Config,
    TransferConfig,
)
from cloudcore.reliability.rate_limiter import OperationCategory, RateLimitPolicy
from cloudcore.reliability.retry import RetryPolicy
from cloudcore.storage.backends import InMemoryIdentity, InMemoryObjectStore
from cloudcore.storage.context import StoreContext

BUCKET = "test-bucket"

SMALL_TRANSFER = dict(
    large_file_threshold_bytes=1024,
    part_size_bytes=256,
    max_concurrent_parts=3,
    max_concurrent_uploads=2,
    max_file_size_bytes=64 * 1024,
    download_stream_threshold_bytes=512,
    download_chunk_size_bytes=128,
    progress_min_delta_bytes=256,
)


def fast_reliability():
    """No backoff sleeps, no pacing."""
    return ReliabilityConfig(
        retry={c: RetryPolicy(base_delay_ms=0, max_delay_ms=0) for c in OperationCategory},
        rate_limits={
            c: RateLimitPolicy.token_bucket(100_000, 100_000.0, max_concurrent=64)
            for c in OperationCategory
        },
    )


def make_config(**transfer):
    return CloudCoreConfig(
        s3=S3Config(bucket_name=BUCKET),
        transfer=TransferConfig(**{**SMALL_TRANSFER, **transfer}),
        reliability=fast_reliability(),
    )


def make_client(store=None, identity=None, **transfer):
    client = BucketClient(make_config(**transfer))
    if store is not None:
        client.attach(store, identity or InMemoryIdentity())
    return client


@pytest.fixture
def store():
    """Empty in-memory bucket."""
    return InMemoryObjectStore(BUCKET)


@pytest.fixture
def ctx(store):
    """Store context over the in-memory bucket."""
    config = make_config()
    return StoreContext(
        bucket=BUCKET,
        client=store,
        transfer=config.transfer,
        presign=config.presign,
        reliability=config.reliability,
    )


@pytest.fixture
def bucket(store):
    """BucketClient attached to the in-memory bucket."""
    return make_client(store)


@pytest.fixture
def make_bucket(store):
    """Client factory for tests that need other transfer settings."""

    def factory(**transfer):
        return make_client(store, **transfer)

    return factory
