"""
Bucket Client
=============

The one object callers hold. It is built from a CloudCoreConfig and
owns everything that lives as long as the connection: the store
clients, the rate limiter, the per-category retry policies, the
metrics and the engines.

Several clients can be open at once, for different buckets or
credentials; nothing is kept in module state.

Example:
    >>> config = CloudCoreConfig.from_env().unwrap()
    >>> async with BucketClient(config) as bucket:
    ...     page = await bucket.list_all("photos/")
    ...     link = await bucket.generate_share_link("photos/cat.jpg", 3600)
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Any,
    AsyncIterator,
    BinaryIO,
    Iterable,
    Optional,
    Sequence,
    Union,
)

from cloudcore.core.config import CloudCoreConfig
from cloudcore.core.errors import CloudCoreError
from cloudcore.core.types import Err, Ok, Result
from cloudcore.observability.metrics import EngineMetrics
from cloudcore.pipeline.progress import ProgressChannel
from cloudcore.reliability.rate_limiter import BucketSnapshot, OperationCategory
from cloudcore.storage.context import StoreContext, instrumented
from cloudcore.storage.delete import DeleteEngine, KeyLike
from cloudcore.storage.download import DownloadEngine, DownloadTask
from cloudcore.storage.keys import StorageKey
from cloudcore.storage.listing import ListingEngine
from cloudcore.storage.models import (
    BatchResult,
    BucketStats,
    CallerIdentity,
    DownloadResult,
    ListPage,
    StorageObject,
)
from cloudcore.storage.protocols import IdentityClient, ObjectStoreClient
from cloudcore.storage.rename import RenameEngine
from cloudcore.storage.s3_store import S3Connection, validate_credentials
from cloudcore.storage.stats import StatsEngine
from cloudcore.storage.upload import (
    ConflictResolver,
    UploadBatch,
    UploadEngine,
    UploadRequest,
    UploadSource,
    UploadTask,
)

logger = logging.getLogger(__name__)


class BucketClient:
    """
    Facade over the bucket engines.

    Every operation returns a Result except list(), which is an async
    generator and raises CloudCoreError. Calling an operation before
    connect() (or attach()) gives NOT_INITIALIZED.
    """

    def __init__(
        self,
        config: CloudCoreConfig,
        client: Optional[ObjectStoreClient] = None,
        identity: Optional[IdentityClient] = None,
        metrics: Optional[EngineMetrics] = None,
    ) -> None:
        if config.s3 is None:
            raise CloudCoreError.configuration("S3 configuration is required")

        self._config = config
        self._connection: Optional[S3Connection] = None
        self._identity = identity
        self.ctx = StoreContext(
            bucket=config.s3.bucket_name,
            client=client,
            transfer=config.transfer,
            presign=config.presign,
            reliability=config.reliability,
            metrics=metrics or EngineMetrics(),
        )

        self.listing = ListingEngine(self.ctx)
        self.uploads = UploadEngine(self.ctx, self.listing)
        self.downloads = DownloadEngine(self.ctx)
        self.deleter = DeleteEngine(self.ctx, self.listing)
        self.renamer = RenameEngine(self.ctx, self.listing, self.deleter)
        self.stats = StatsEngine(self.ctx, self.listing)

    @property
    def bucket(self) -> str:
        return self.ctx.bucket

    @property
    def connected(self) -> bool:
        return self.ctx.connected

    @property
    def metrics(self) -> EngineMetrics:
        return self.ctx.metrics

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    def attach(
        self,
        client: ObjectStoreClient,
        identity: Optional[IdentityClient] = None,
    ) -> None:
        """Use an already-open store client (in-memory store, test double)."""
        self.ctx.client = client
        if identity is not None:
            self._identity = identity

    async def connect(self) -> Result[None, CloudCoreError]:
        """Open the aioboto3 clients. A no-op when a client is attached."""
        if self.ctx.connected:
            return Ok(None)

        connection = S3Connection(self._config.s3)
        try:
            s3, sts = await connection.open()
        except Exception as e:
            logger.error(f"S3 connection to {self.bucket} failed: {e}")
            return Err(CloudCoreError.configuration(f"S3 connection failed: {e}"))

        self._connection = connection
        self.ctx.client = s3
        self._identity = sts
        return Ok(None)

    async def close(self) -> None:
        """Release the store clients. Safe to call multiple times."""
        connection, self._connection = self._connection, None
        self.ctx.client = None
        if connection is not None:
            self._identity = None
            await connection.close()

    async def __aenter__(self) -> BucketClient:
        result = await self.connect()
        if result.is_err():
            raise result.error
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # CREDENTIALS
    # -------------------------------------------------------------------------

    @instrumented("validate_credentials")
    async def validate_credentials(self) -> Result[CallerIdentity, CloudCoreError]:
        """Check bucket access and report who the credentials belong to."""
        self.ctx.require_client("validate_credentials")
        return await validate_credentials(self.ctx, self._identity)

    # -------------------------------------------------------------------------
    # LISTING
    # -------------------------------------------------------------------------

    def list(
        self,
        prefix: Optional[str] = None,
        *,
        abort: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ListPage]:
        return self.listing.list(prefix, abort=abort)

    async def list_page(
        self,
        prefix: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Result[ListPage, CloudCoreError]:
        return await self.listing.list_page(prefix, token)

    async def list_all(
        self,
        prefix: Optional[str] = None,
        *,
        abort: Optional[asyncio.Event] = None,
    ) -> Result[list[StorageObject], CloudCoreError]:
        return await self.listing.list_all(prefix, abort=abort)

    # -------------------------------------------------------------------------
    # TRANSFERS
    # -------------------------------------------------------------------------

    async def upload(
        self,
        source: UploadSource,
        key: str,
        *,
        progress: Optional[ProgressChannel] = None,
        task: Optional[UploadTask] = None,
    ) -> Result[StorageKey, CloudCoreError]:
        return await self.uploads.upload(source, key, progress=progress, task=task)

    def upload_batch(
        self,
        requests: Sequence[UploadRequest],
        target_folder: str = "",
        concurrency: Optional[int] = None,
        resolver: Optional[ConflictResolver] = None,
    ) -> UploadBatch:
        """Prepare a batch upload; start it with ``await batch.run()``."""
        return self.uploads.upload_batch(requests, target_folder, concurrency, resolver)

    async def download(
        self,
        obj: Union[StorageObject, str],
        *,
        size: Optional[int] = None,
        destination: Optional[BinaryIO] = None,
        progress: Optional[ProgressChannel] = None,
        task: Optional[DownloadTask] = None,
    ) -> Result[DownloadResult, CloudCoreError]:
        return await self.downloads.download(
            obj, size=size, destination=destination, progress=progress, task=task,
        )

    async def generate_share_link(
        self,
        key: Union[str, StorageKey],
        expiry_seconds: Optional[int] = None,
    ) -> Result[str, CloudCoreError]:
        if expiry_seconds is None:
            expiry_seconds = self.ctx.presign.default_expiry_seconds
        return await self.downloads.generate_share_link(key, expiry_seconds)

    async def preview_url(self, key: Union[str, StorageKey]) -> Result[str, CloudCoreError]:
        return await self.downloads.preview_url(key)

    # -------------------------------------------------------------------------
    # MUTATIONS
    # -------------------------------------------------------------------------

    async def delete_keys(self, keys: Iterable[KeyLike]) -> Result[BatchResult, CloudCoreError]:
        return await self.deleter.delete_keys(keys)

    async def delete_items(
        self,
        items: Iterable[Union[StorageObject, KeyLike]],
    ) -> Result[BatchResult, CloudCoreError]:
        return await self.deleter.delete_items(items)

    async def rename(
        self,
        old_key: Union[str, StorageObject],
        new_name: str,
        is_folder: Optional[bool] = None,
    ) -> Result[StorageKey, CloudCoreError]:
        if isinstance(old_key, StorageObject):
            old_key, is_folder = old_key.key.value, old_key.is_folder
        return await self.renamer.rename(old_key, new_name, is_folder)

    async def move(self, key: str, destination_folder: str) -> Result[StorageKey, CloudCoreError]:
        return await self.renamer.move(key, destination_folder)

    async def create_folder(self, folder_key: str) -> Result[StorageKey, CloudCoreError]:
        return await self.renamer.create_folder(folder_key)

    # -------------------------------------------------------------------------
    # STATISTICS
    # -------------------------------------------------------------------------

    async def get_bucket_stats(
        self,
        prefix: str = "",
        *,
        abort: Optional[asyncio.Event] = None,
    ) -> Result[BucketStats, CloudCoreError]:
        return await self.stats.get_bucket_stats(prefix, abort=abort)

    def limiter_snapshot(self) -> dict[OperationCategory, BucketSnapshot]:
        assert self.ctx.limiter is not None
        return self.ctx.limiter.snapshot()

    def export_metrics(self) -> str:
        """Prometheus text exposition of the engine metrics."""
        return self.ctx.metrics.export_prometheus()
