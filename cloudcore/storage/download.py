"""
Download Engine: Pre-Signed Fast Path and Streamed Slow Path

- Fast path (no progress requested, or object smaller than
  download_stream_threshold): return a pre-signed GET URL and let the
  caller fetch directly. A progress channel, if given, receives a
  single 100% event.
- Slow path: get_object under a DOWNLOAD permit held for the whole
  body, read in download_chunk_size chunks, written to a destination
  or collected in memory. Progress is emitted only when at least
  progress_min_delta bytes arrived since the last event, plus once at
  the end. The cancellation flag is checked before every chunk.

Share links and previews are pre-signed URLs only.
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Optional, Union

from cloudcore.core.errors import CloudCoreError, StoreError, TransferError
from cloudcore.core.types import Err, Ok, Result
from cloudcore.pipeline.progress import ProgressChannel
from cloudcore.reliability.rate_limiter import OperationCategory
from cloudcore.storage.context import StoreContext, instrumented
from cloudcore.storage.keys import StorageKey, sanitize
from cloudcore.storage.models import DownloadResult, StorageObject, TransferState, TransferTask

logger = logging.getLogger(__name__)


class DownloadTask(TransferTask):
    """One object download."""

    __slots__ = ()


class DownloadEngine:
    """Downloads and pre-signed links for one bucket."""

    __slots__ = ("ctx",)

    def __init__(self, ctx: StoreContext) -> None:
        self.ctx = ctx

    # -------------------------------------------------------------------------
    # PRE-SIGNED URLS
    # -------------------------------------------------------------------------

    def _file_key(self, raw: Union[str, StorageKey]) -> StorageKey:
        parsed = sanitize(raw.value if isinstance(raw, StorageKey) else raw)
        if parsed.is_err():
            raise parsed.error
        if parsed.value.is_folder:
            raise CloudCoreError.invalid_argument("key", parsed.value.value, "folders cannot be downloaded")
        return parsed.value

    async def _presign(self, key: StorageKey, expiry: int) -> str:
        try:
            return await self.ctx.call(
                OperationCategory.DOWNLOAD,
                "generate_presigned_url",
                lambda s3: s3.generate_presigned_url(
                    ClientMethod="get_object",
                    Params={"Bucket": self.ctx.bucket, "Key": key.value},
                    ExpiresIn=expiry,
                ),
            )
        except CloudCoreError:
            raise
        except Exception as e:
            raise StoreError.from_exception(e, "presign", key.value) from e

    @instrumented("share_link")
    async def generate_share_link(
        self,
        key: Union[str, StorageKey],
        expiry_seconds: int,
    ) -> Result[str, CloudCoreError]:
        """
        Pre-signed GET URL valid for ``expiry_seconds``.

        Accepts [min_expiry_seconds, max_expiry_seconds]; the store
        rejects signatures longer than seven days.
        """
        presign = self.ctx.presign
        if (
            isinstance(expiry_seconds, bool)
            or not isinstance(expiry_seconds, int)
            or not presign.min_expiry_seconds <= expiry_seconds <= presign.max_expiry_seconds
        ):
            return Err(CloudCoreError.invalid_argument(
                "expiry_seconds",
                expiry_seconds,
                f"must be between {presign.min_expiry_seconds} and {presign.max_expiry_seconds}",
            ))
        file_key = self._file_key(key)
        url = await self._presign(file_key, expiry_seconds)
        logger.info(f"Share link for {file_key.value} valid {expiry_seconds}s")
        return Ok(url)

    @instrumented("preview_url")
    async def preview_url(self, key: Union[str, StorageKey]) -> Result[str, CloudCoreError]:
        """Pre-signed GET URL with the default expiry."""
        file_key = self._file_key(key)
        return Ok(await self._presign(file_key, self.ctx.presign.default_expiry_seconds))

    # -------------------------------------------------------------------------
    # DOWNLOAD
    # -------------------------------------------------------------------------

    @instrumented("download")
    async def download(
        self,
        obj: Union[StorageObject, str],
        *,
        size: Optional[int] = None,
        destination: Optional[BinaryIO] = None,
        progress: Optional[ProgressChannel] = None,
        task: Optional[DownloadTask] = None,
    ) -> Result[DownloadResult, CloudCoreError]:
        """
        Download a file.

        Args:
            obj: Listing entry, or a raw key (then pass ``size`` if known)
            destination: Binary writer for the streamed body
            progress: Progress channel; requests streaming for large files
            task: Existing task (for cancellation from the caller's side)

        Returns:
            Ok(DownloadResult) carrying either ``url`` (fast path) or
            the streamed size and, without a destination, ``data``
        """
        if isinstance(obj, StorageObject):
            raw_key, known_size = obj.key.value, obj.size_bytes
        else:
            raw_key, known_size = obj, size

        task = task or DownloadTask(raw_key, known_size or 0, progress)
        try:
            key = self._file_key(raw_key)
            task.key = key.value
            if task.cancelled:
                raise TransferError.cancelled("download", key.value)

            self.ctx.require_client("download")
            task.mark(TransferState.IN_FLIGHT)

            fast = task.progress is None or (
                known_size is not None
                and known_size < self.ctx.transfer.download_stream_threshold_bytes
            )
            if fast:
                result = await self._fast(task, key, known_size or 0)
            else:
                result = await self._stream(task, key, destination)
        except CloudCoreError as e:
            task.mark(TransferState.FAILED, e)
            return Err(e)
        finally:
            if task.progress is not None:
                task.progress.close()

        task.mark(TransferState.COMPLETED)
        return Ok(result)

    async def _fast(self, task: DownloadTask, key: StorageKey, size: int) -> DownloadResult:
        url = await self._presign(key, self.ctx.presign.default_expiry_seconds)
        task.total = size
        task.report(size, done=True)
        return DownloadResult(key=key, size_bytes=size, url=url)

    async def _stream(
        self,
        task: DownloadTask,
        key: StorageKey,
        destination: Optional[BinaryIO],
    ) -> DownloadResult:
        transfer = self.ctx.transfer
        buffer = bytearray() if destination is None else None
        loaded = 0

        async with self.ctx.limiter.acquire(OperationCategory.DOWNLOAD):
            try:
                response = await self.ctx.call(
                    OperationCategory.DOWNLOAD,
                    "get_object",
                    lambda s3: s3.get_object(Bucket=self.ctx.bucket, Key=key.value),
                    permit=False,
                )
            except CloudCoreError:
                raise
            except Exception as e:
                raise StoreError.from_exception(e, "download", key.value) from e

            task.total = int(response.get("ContentLength") or task.total)
            last_emitted = 0

            try:
                async with response["Body"] as stream:
                    while True:
                        if task.cancelled:
                            raise TransferError.cancelled("download", key.value)
                        chunk = await stream.read(transfer.download_chunk_size_bytes)
                        if not chunk:
                            break
                        if buffer is not None:
                            buffer.extend(chunk)
                        else:
                            destination.write(chunk)
                        loaded += len(chunk)
                        if loaded - last_emitted >= transfer.progress_min_delta_bytes:
                            task.report(loaded)
                            last_emitted = loaded
            except CloudCoreError:
                raise
            except Exception as e:
                # a partially consumed body cannot be replayed
                raise StoreError.from_exception(e, "download", key.value, retried=False) from e

        task.report(loaded, done=True)
        self.ctx.metrics.bytes.inc(loaded, direction="download")
        logger.info(f"Downloaded {key.value} ({loaded} bytes)")
        return DownloadResult(
            key=key,
            size_bytes=loaded,
            data=bytes(buffer) if buffer is not None else None,
        )
