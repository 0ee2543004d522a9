"""
Storage Data Model

Value types returned by the engines. All immutable except the
transfer task objects, which are state machines owned by the engine
running them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Iterable, Optional

from cloudcore.core.errors import CloudCoreError, ErrorCode
from cloudcore.pipeline.progress import ProgressChannel, ProgressEvent
from cloudcore.storage.keys import StorageKey


class ObjectKind(Enum):
    FILE = auto()
    FOLDER = auto()


@dataclass(frozen=True, slots=True)
class StorageObject:
    """
    One entry of a delimiter listing.

    Folders come from common prefixes: size 0, no timestamp.
    """
    key: StorageKey
    display_name: str
    kind: ObjectKind
    size_bytes: int = 0
    last_modified: Optional[datetime] = None

    @property
    def is_folder(self) -> bool:
        return self.kind is ObjectKind.FOLDER


@dataclass(frozen=True, slots=True)
class ListPage:
    items: tuple[StorageObject, ...]
    continuation_token: Optional[str] = None

    @property
    def folders(self) -> tuple[StorageObject, ...]:
        return tuple(i for i in self.items if i.is_folder)

    @property
    def files(self) -> tuple[StorageObject, ...]:
        return tuple(i for i in self.items if not i.is_folder)


@dataclass(frozen=True, slots=True)
class ScannedObject:
    """Raw entry of a flat (recursive) listing."""
    key: str
    size: int
    last_modified: Optional[datetime] = None


# =============================================================================
# BULK RESULTS
# =============================================================================
@dataclass(frozen=True, slots=True)
class FailedKey:
    key: str
    error_code: str
    message: str


@dataclass(frozen=True, slots=True)
class BatchResult:
    """
    Outcome of a bulk operation. Partial failure lives here rather
    than in an exception.
    """
    succeeded_keys: tuple[StorageKey, ...] = ()
    failed: tuple[FailedKey, ...] = ()

    @classmethod
    def all_failed(
        cls,
        keys: Iterable[str],
        error_code: str,
        message: str,
    ) -> BatchResult:
        return cls(failed=tuple(FailedKey(k, error_code, message) for k in keys))

    def merge(self, other: BatchResult) -> BatchResult:
        return BatchResult(
            succeeded_keys=self.succeeded_keys + other.succeeded_keys,
            failed=self.failed + other.failed,
        )

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_keys(self) -> tuple[str, ...]:
        return tuple(f.key for f in self.failed)

    def error(self) -> Optional[CloudCoreError]:
        """PARTIAL_BATCH_FAILURE summary, or None if nothing failed."""
        if not self.failed:
            return None
        first = self.failed[0]
        return CloudCoreError(
            code=ErrorCode.PARTIAL_BATCH_FAILURE,
            message=(
                f"{len(self.failed)} of {len(self.failed) + len(self.succeeded_keys)} "
                f"item(s) failed; first: {first.key}: {first.message}"
            ),
            context={
                "failed": len(self.failed),
                "succeeded": len(self.succeeded_keys),
                "failed_keys": list(self.failed_keys[:100]),
            },
        )


# =============================================================================
# STATISTICS / IDENTITY / DOWNLOADS
# =============================================================================
@dataclass(frozen=True, slots=True)
class CategoryStats:
    count: int = 0
    size: int = 0


@dataclass(frozen=True, slots=True)
class BucketStats:
    total_size: int
    file_count: int
    folder_count: int
    categories: dict[str, CategoryStats] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "total_size": self.total_size,
            "file_count": self.file_count,
            "folder_count": self.folder_count,
            "categories": {
                name: {"count": c.count, "size": c.size}
                for name, c in self.categories.items()
            },
        }


@dataclass(frozen=True, slots=True)
class CallerIdentity:
    user_id: str
    account: str
    arn: str


@dataclass(frozen=True, slots=True)
class DownloadResult:
    """
    Either a pre-signed URL (fast path) or streamed bytes.

    ``data`` is None when the body was written to a destination.
    """
    key: StorageKey
    size_bytes: int
    url: Optional[str] = None
    data: Optional[bytes] = None

    @property
    def streamed(self) -> bool:
        return self.url is None


# =============================================================================
# TRANSFER TASKS
# =============================================================================
class TransferState(Enum):
    QUEUED = auto()
    AWAITING_CONFLICT_RESOLUTION = auto()
    IN_FLIGHT = auto()
    COMPLETED = auto()
    FAILED = auto()
    SKIPPED = auto()

    @property
    def terminal(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.FAILED, TransferState.SKIPPED)


class TransferTask:
    """
    Mutable state of one upload or download.

    cancel() only sets a flag; the engine checks it before starting
    each new unit of work (part, chunk) and finishes the unit in flight.
    """

    __slots__ = ("key", "total", "state", "error", "progress", "_cancel", "_loaded")

    def __init__(
        self,
        key: str,
        total: int,
        progress: Optional[ProgressChannel] = None,
    ) -> None:
        self.key = key
        self.total = total
        self.state = TransferState.QUEUED
        self.error: Optional[CloudCoreError] = None
        self.progress = progress
        self._cancel = asyncio.Event()
        self._loaded = 0

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def loaded(self) -> int:
        return self._loaded

    def report(self, loaded: int, done: bool = False) -> None:
        self._loaded = loaded
        if self.progress is not None:
            self.progress.publish(ProgressEvent(self.key, loaded, self.total, done))

    def mark(self, state: TransferState, error: Optional[CloudCoreError] = None) -> None:
        self.state = state
        self.error = error

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key!r}, {self.state.name})"
