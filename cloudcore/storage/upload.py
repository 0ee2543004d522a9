"""
Upload Engine: Single-Request and Multipart Uploads, Batches

Per-object state machine (UploadTask):

    QUEUED -> IN_FLIGHT -> COMPLETED | FAILED

Batches add AWAITING_CONFLICT_RESOLUTION (a top-level file whose name
already exists in the target folder) and SKIPPED.

Routing by size:
- size <= large_file_threshold: one put_object
- size >  large_file_threshold: multipart. Parts of part_size are
  read and uploaded with at most max_concurrent_parts in flight,
  complete_multipart_upload is sent only after every part has been
  acknowledged, and any failure or cancellation aborts the upload.

Key validation and the size cap are checked before any permit is
requested or any byte is sent.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import mimetypes
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

from cloudcore.core import constants as C
from cloudcore.core.errors import CloudCoreError, ErrorCode, StoreError, TransferError
from cloudcore.core.types import Err, Ok, Result
from cloudcore.pipeline.progress import ProgressChannel
from cloudcore.pipeline.window import InFlightWindow
from cloudcore.reliability.rate_limiter import OperationCategory
from cloudcore.storage.context import StoreContext, instrumented
from cloudcore.storage.keys import (
    ROOT,
    StorageKey,
    join_key,
    sanitize,
    sanitize_prefix,
    unique_name,
    validate_file_name,
)
from cloudcore.storage.listing import ListingEngine
from cloudcore.storage.models import BatchResult, FailedKey, TransferState, TransferTask

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


# =============================================================================
# SOURCES
# =============================================================================
class UploadSource(Protocol):
    """Readable content with a known size."""

    name: str
    size: int
    content_type: str

    async def read(self, offset: int, length: int) -> bytes:
        ...


def guess_content_type(name: str) -> str:
    content_type, _ = mimetypes.guess_type(name)
    return content_type or DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class BytesSource:
    """In-memory content."""

    data: bytes
    name: str
    content_type: str = ""

    def __post_init__(self) -> None:
        if not self.content_type:
            object.__setattr__(self, "content_type", guess_content_type(self.name))

    @property
    def size(self) -> int:
        return len(self.data)

    async def read(self, offset: int, length: int) -> bytes:
        return self.data[offset:offset + length]


class FileSource:
    """Local file, read by range in a worker thread."""

    __slots__ = ("path", "name", "size", "content_type")

    def __init__(self, path: Union[str, Path], content_type: Optional[str] = None) -> None:
        self.path = Path(path)
        self.name = self.path.name
        self.size = self.path.stat().st_size
        self.content_type = content_type or guess_content_type(self.name)

    def _read_range(self, offset: int, length: int) -> bytes:
        with self.path.open("rb") as f:
            f.seek(offset)
            return f.read(length)

    async def read(self, offset: int, length: int) -> bytes:
        return await asyncio.to_thread(self._read_range, offset, length)


# =============================================================================
# TASKS AND CONFLICTS
# =============================================================================
class UploadTask(TransferTask):
    """One object upload."""

    __slots__ = ("source", "relative_path", "upload_id")

    def __init__(
        self,
        key: str,
        source: UploadSource,
        progress: Optional[ProgressChannel] = None,
        relative_path: Optional[str] = None,
    ) -> None:
        super().__init__(key, source.size, progress)
        self.source = source
        self.relative_path = relative_path or source.name
        self.upload_id: Optional[str] = None

    @property
    def nested(self) -> bool:
        return C.DELIMITER in self.relative_path.strip(C.DELIMITER)


class ConflictChoice(Enum):
    KEEP_BOTH = auto()
    OVERWRITE = auto()
    SKIP = auto()
    RENAME = auto()


@dataclass(frozen=True)
class ConflictDecision:
    choice: ConflictChoice
    new_name: Optional[str] = None

    @classmethod
    def keep_both(cls) -> ConflictDecision:
        return cls(ConflictChoice.KEEP_BOTH)

    @classmethod
    def overwrite(cls) -> ConflictDecision:
        return cls(ConflictChoice.OVERWRITE)

    @classmethod
    def skip(cls) -> ConflictDecision:
        return cls(ConflictChoice.SKIP)

    @classmethod
    def rename(cls, new_name: str) -> ConflictDecision:
        return cls(ConflictChoice.RENAME, new_name)


@dataclass(frozen=True)
class UploadRequest:
    """
    One file of a batch.

    ``relative_path`` places the file below the target folder
    ("album/2024/a.jpg" for folder uploads); defaults to the source name.
    """
    source: UploadSource
    relative_path: Optional[str] = None
    progress: Optional[ProgressChannel] = None


ConflictResolver = Callable[[UploadTask], Awaitable[ConflictDecision]]


# =============================================================================
# ENGINE
# =============================================================================
class UploadEngine:
    """Uploads objects into one bucket."""

    __slots__ = ("ctx", "listing")

    def __init__(self, ctx: StoreContext, listing: ListingEngine) -> None:
        self.ctx = ctx
        self.listing = listing

    @instrumented("upload")
    async def upload(
        self,
        source: UploadSource,
        key: str,
        *,
        progress: Optional[ProgressChannel] = None,
        task: Optional[UploadTask] = None,
    ) -> Result[StorageKey, CloudCoreError]:
        """
        Upload ``source`` to ``key``.

        The task's progress channel is closed when the upload ends.

        Returns:
            Ok(StorageKey) once the object is fully stored, or Err with
            INVALID_PATH, SIZE_EXCEEDED, CANCELLED or the store error
        """
        task = task or UploadTask(key, source, progress)
        try:
            stored = await self._run(task, key)
        except CloudCoreError as e:
            task.mark(TransferState.FAILED, e)
            return Err(e)
        finally:
            if task.progress is not None:
                task.progress.close()
        task.mark(TransferState.COMPLETED)
        return Ok(stored)

    async def _run(self, task: UploadTask, raw_key: str) -> StorageKey:
        parsed = sanitize(raw_key)
        if parsed.is_err():
            raise parsed.error
        key = parsed.value
        if key.is_folder:
            raise CloudCoreError.invalid_argument("key", raw_key, "upload target must be a file key")
        task.key = key.value

        size = task.source.size
        if size > self.ctx.transfer.max_file_size_bytes:
            raise TransferError.size_exceeded(key.value, size, self.ctx.transfer.max_file_size_bytes)
        if task.cancelled:
            raise TransferError.cancelled("upload", key.value)

        self.ctx.require_client("upload")
        task.mark(TransferState.IN_FLIGHT)

        if size > self.ctx.transfer.large_file_threshold_bytes:
            await self._multipart(task, key)
        else:
            await self._single(task, key)

        self.ctx.metrics.bytes.inc(size, direction="upload")
        task.report(size, done=True)
        logger.info(f"Uploaded {key.value} ({size} bytes)")
        return key

    # -------------------------------------------------------------------------
    # SINGLE REQUEST
    # -------------------------------------------------------------------------

    async def _read(self, task: UploadTask, key: StorageKey, offset: int, length: int) -> bytes:
        try:
            return await task.source.read(offset, length)
        except CloudCoreError:
            raise
        except Exception as e:
            logger.error(f"Reading {task.source.name} for {key.value} failed: {e}")
            raise TransferError.source_unreadable(key.value, task.source.name, e) from e

    async def _single(self, task: UploadTask, key: StorageKey) -> None:
        data = await self._read(task, key, 0, task.source.size)
        try:
            await self.ctx.call(
                OperationCategory.UPLOAD,
                "put_object",
                lambda s3: s3.put_object(
                    Bucket=self.ctx.bucket,
                    Key=key.value,
                    Body=data,
                    ContentType=task.source.content_type,
                ),
            )
        except CloudCoreError:
            raise
        except Exception as e:
            raise StoreError.from_exception(e, "upload", key.value) from e

    # -------------------------------------------------------------------------
    # MULTIPART
    # -------------------------------------------------------------------------

    async def _multipart(self, task: UploadTask, key: StorageKey) -> None:
        transfer = self.ctx.transfer
        size = task.source.size

        try:
            created = await self.ctx.call(
                OperationCategory.UPLOAD,
                "create_multipart_upload",
                lambda s3: s3.create_multipart_upload(
                    Bucket=self.ctx.bucket,
                    Key=key.value,
                    ContentType=task.source.content_type,
                ),
                idempotent=False,
            )
        except CloudCoreError:
            raise
        except Exception as e:
            raise StoreError.from_exception(e, "upload", key.value, retried=False) from e

        upload_id = created["UploadId"]
        task.upload_id = upload_id
        acknowledged = [0]

        try:
            async with InFlightWindow(
                transfer.max_concurrent_parts, name=f"parts:{key.value}"
            ) as window:
                for number, offset in enumerate(range(0, size, transfer.part_size_bytes), start=1):
                    if task.cancelled:
                        raise TransferError.cancelled("upload", key.value)
                    length = min(transfer.part_size_bytes, size - offset)
                    await window.submit(functools.partial(
                        self._upload_part, task, key, upload_id, number, offset, length, acknowledged,
                    ))
                parts = await window.drain()

            parts.sort(key=lambda p: p["PartNumber"])
            await self.ctx.call(
                OperationCategory.UPLOAD,
                "complete_multipart_upload",
                lambda s3: s3.complete_multipart_upload(
                    Bucket=self.ctx.bucket,
                    Key=key.value,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                ),
            )
        except CloudCoreError:
            await self._abort(key, upload_id)
            raise
        except Exception as e:
            await self._abort(key, upload_id)
            raise StoreError.from_exception(e, "upload", key.value) from e
        except asyncio.CancelledError:
            await self._abort(key, upload_id)
            raise

        logger.debug(f"Multipart upload {upload_id} completed with {len(parts)} part(s)")

    async def _upload_part(
        self,
        task: UploadTask,
        key: StorageKey,
        upload_id: str,
        number: int,
        offset: int,
        length: int,
        acknowledged: list[int],
    ) -> dict[str, Any]:
        data = await self._read(task, key, offset, length)
        response = await self.ctx.call(
            OperationCategory.UPLOAD,
            "upload_part",
            lambda s3: s3.upload_part(
                Bucket=self.ctx.bucket,
                Key=key.value,
                UploadId=upload_id,
                PartNumber=number,
                Body=data,
            ),
        )
        acknowledged[0] += length
        task.report(acknowledged[0])
        return {"PartNumber": number, "ETag": response["ETag"]}

    async def _abort(self, key: StorageKey, upload_id: str) -> None:
        try:
            await self.ctx.call(
                OperationCategory.UPLOAD,
                "abort_multipart_upload",
                lambda s3: s3.abort_multipart_upload(
                    Bucket=self.ctx.bucket, Key=key.value, UploadId=upload_id,
                ),
            )
            logger.info(f"Aborted multipart upload {upload_id} for {key.value}")
        except Exception as e:
            # Parts stay billable until a lifecycle rule removes them
            logger.error(f"Failed to abort multipart upload {upload_id} for {key.value}: {e}")

    # -------------------------------------------------------------------------
    # BATCH
    # -------------------------------------------------------------------------

    def upload_batch(
        self,
        requests: Sequence[UploadRequest],
        target_folder: str = "",
        concurrency: Optional[int] = None,
        resolver: Optional[ConflictResolver] = None,
    ) -> UploadBatch:
        """Prepare a batch; nothing is sent until ``await batch.run()``."""
        return UploadBatch(
            self,
            requests,
            target_folder,
            concurrency or self.ctx.transfer.max_concurrent_uploads,
            resolver,
        )


class UploadBatch:
    """
    Many uploads into one folder with duplicate detection.

    The target folder is listed once. Top-level files whose name is
    already taken wait in AWAITING_CONFLICT_RESOLUTION until resolve()
    (or the resolver) decides; everything else goes straight to the
    worker queue, so a pending conflict never holds up other files.
    run() returns once every task is COMPLETED, FAILED or SKIPPED.
    """

    def __init__(
        self,
        engine: UploadEngine,
        requests: Sequence[UploadRequest],
        target_folder: str,
        concurrency: int,
        resolver: Optional[ConflictResolver],
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._engine = engine
        self._requests = list(requests)
        self._raw_target = target_folder
        self._concurrency = concurrency
        self._resolver = resolver
        self._target: StorageKey = ROOT
        self._names: set[str] = set()
        self._queue: asyncio.Queue[Optional[UploadTask]] = asyncio.Queue()
        self._remaining = 0
        self._started = False
        self.tasks: list[UploadTask] = []
        self.planned = asyncio.Event()

    # -------------------------------------------------------------------------
    # INSPECTION
    # -------------------------------------------------------------------------

    @property
    def pending_conflicts(self) -> list[UploadTask]:
        return [t for t in self.tasks if t.state is TransferState.AWAITING_CONFLICT_RESOLUTION]

    @property
    def target(self) -> StorageKey:
        return self._target

    # -------------------------------------------------------------------------
    # DECISIONS
    # -------------------------------------------------------------------------

    def resolve(self, task: UploadTask, decision: ConflictDecision) -> Result[None, CloudCoreError]:
        """Apply a conflict decision to a task awaiting resolution."""
        if task.state is not TransferState.AWAITING_CONFLICT_RESOLUTION:
            return Err(CloudCoreError.invalid_argument(
                "task", task.key, f"not awaiting conflict resolution ({task.state.name})"
            ))

        choice = decision.choice
        if choice is ConflictChoice.SKIP:
            task.mark(TransferState.SKIPPED)
            logger.info(f"Skipped existing {task.key}")
            self._finished()
            return Ok(None)

        if choice is ConflictChoice.OVERWRITE:
            self._enqueue(task)
            return Ok(None)

        if choice is ConflictChoice.KEEP_BOTH:
            name = unique_name(StorageKey(task.key).name, self._names)
        else:
            name = decision.new_name or ""
            if not validate_file_name(name):
                return Err(CloudCoreError.invalid_argument("new_name", name, "invalid file name"))
            if name in self._names:
                return Err(TransferError.conflict(self._target.value + name))

        joined = join_key(self._target, name)
        if joined.is_err():
            return joined
        self._names.add(name)
        task.key = joined.value.value
        self._enqueue(task)
        return Ok(None)

    # -------------------------------------------------------------------------
    # EXECUTION
    # -------------------------------------------------------------------------

    def cancel(self) -> None:
        """Cancel every task that has not finished yet."""
        for task in self.tasks:
            if task.state.terminal:
                continue
            task.cancel()
            if task.state is TransferState.AWAITING_CONFLICT_RESOLUTION:
                task.mark(TransferState.FAILED, TransferError.cancelled("upload", task.key))
                self._finished()

    async def run(self) -> Result[BatchResult, CloudCoreError]:
        if self._started:
            return Err(CloudCoreError.invalid_argument("batch", "run", "batch already started"))
        self._started = True

        target = sanitize_prefix(self._raw_target)
        if target.is_err():
            return target
        self._target = target.value

        existing = await self._engine.listing.list_all(self._target.value)
        if existing.is_err():
            return existing
        self._names = {item.display_name for item in existing.value}

        self._plan()
        self.planned.set()

        workers = [
            asyncio.ensure_future(self._worker())
            for _ in range(min(self._concurrency, max(1, len(self.tasks))))
        ]
        resolvers = [
            asyncio.ensure_future(self._ask(task))
            for task in self.pending_conflicts
        ] if self._resolver is not None else []

        if self._remaining == 0:
            self._stop_workers(len(workers))

        try:
            await asyncio.gather(*workers, *resolvers)
        except BaseException:
            for future in (*workers, *resolvers):
                future.cancel()
            raise

        return Ok(self._result())

    def _plan(self) -> None:
        max_size = self._engine.ctx.transfer.max_file_size_bytes
        conflicts = 0

        for request in self._requests:
            relative = (request.relative_path or request.source.name).lstrip(C.DELIMITER)
            task = UploadTask(
                self._target.value + relative,
                request.source,
                request.progress,
                relative_path=relative,
            )
            self.tasks.append(task)
            self._remaining += 1

            parsed = join_key(self._target, relative)
            if parsed.is_err():
                task.mark(TransferState.FAILED, parsed.error)
                self._remaining -= 1
                continue
            task.key = parsed.value.value

            if request.source.size > max_size:
                task.mark(TransferState.FAILED, TransferError.size_exceeded(
                    task.key, request.source.size, max_size,
                ))
                self._remaining -= 1
                continue

            if task.nested:
                self._enqueue(task)
                continue

            name = parsed.value.name
            if name in self._names:
                task.mark(TransferState.AWAITING_CONFLICT_RESOLUTION)
                conflicts += 1
                continue

            self._names.add(name)
            self._enqueue(task)

        logger.info(
            f"Upload batch into {self._target.value or '/'}: {len(self.tasks)} file(s), "
            f"{conflicts} conflict(s)"
        )

    def _enqueue(self, task: UploadTask) -> None:
        task.mark(TransferState.QUEUED)
        self._queue.put_nowait(task)

    def _finished(self) -> None:
        self._remaining -= 1
        if self._remaining == 0:
            self._stop_workers(self._concurrency)

    def _stop_workers(self, count: int) -> None:
        for _ in range(count):
            self._queue.put_nowait(None)

    async def _worker(self) -> None:
        while True:
            task = await self._queue.get()
            if task is None:
                return
            try:
                if task.cancelled:
                    task.mark(TransferState.FAILED, TransferError.cancelled("upload", task.key))
                else:
                    await self._engine.upload(task.source, task.key, task=task)
            except Exception as e:
                logger.error(f"Upload of {task.key} failed unexpectedly: {e}")
                task.mark(TransferState.FAILED, StoreError.from_exception(e, "upload", task.key))
            finally:
                self._finished()

    async def _ask(self, task: UploadTask) -> None:
        assert self._resolver is not None
        try:
            decision = await self._resolver(task)
        except Exception as e:
            logger.error(f"Conflict resolver failed for {task.key}: {e}")
            task.mark(TransferState.FAILED, CloudCoreError.invalid_argument(
                "resolver", task.key, str(e),
            ))
            self._finished()
            return

        result = self.resolve(task, decision)
        if result.is_err() and task.state is TransferState.AWAITING_CONFLICT_RESOLUTION:
            task.mark(TransferState.FAILED, result.error)
            self._finished()

    def _result(self) -> BatchResult:
        succeeded = tuple(
            StorageKey(t.key) for t in self.tasks if t.state is TransferState.COMPLETED
        )
        failed = tuple(
            FailedKey(
                t.key,
                (t.error.code if t.error else ErrorCode.OPERATION_FAILED).name,
                t.error.message if t.error else "failed",
            )
            for t in self.tasks if t.state is TransferState.FAILED
        )
        return BatchResult(succeeded_keys=succeeded, failed=failed)
