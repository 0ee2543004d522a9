"""
Recursive Rename/Move Engine

The store has no rename: a move is copy-then-delete, per key.

- File: copy_object to the new key, then delete the original.
- Folder: a streaming pipeline. Each page of the recursive scan is fed
  into an InFlightWindow of at most max_concurrent_copies copies as
  soon as it arrives. Only after every copy has been acknowledged are
  the originals removed, through the batch delete engine.

The source prefix is replaced only at the start of each key, so
"photos/" -> "pics/" turns "photos/x/photos/y.jpg" into
"pics/x/photos/y.jpg".

There is no rollback. If copying stops part way, copies already made
stay at the destination and the error (RENAME_INCOMPLETE) says so;
if deleting stops part way, the keys left behind are listed.
"""

from __future__ import annotations

import functools
import logging
from typing import Optional

from cloudcore.core.errors import (
    CloudCoreError,
    ErrorCode,
    PathError,
    StoreError,
    TransferError,
)
from cloudcore.core.types import Err, Ok, Result
from cloudcore.pipeline.window import InFlightWindow
from cloudcore.reliability.rate_limiter import OperationCategory
from cloudcore.storage.context import StoreContext, instrumented
from cloudcore.storage.delete import DeleteEngine
from cloudcore.storage.keys import (
    StorageKey,
    join_key,
    preserve_file_extension,
    sanitize,
    sanitize_prefix,
    validate_file_name,
    validate_folder_name,
)
from cloudcore.storage.listing import ListingEngine

logger = logging.getLogger(__name__)


class RenameEngine:
    """Rename, move and folder creation for one bucket."""

    __slots__ = ("ctx", "listing", "deleter")

    def __init__(self, ctx: StoreContext, listing: ListingEngine, deleter: DeleteEngine) -> None:
        self.ctx = ctx
        self.listing = listing
        self.deleter = deleter

    # -------------------------------------------------------------------------
    # PUBLIC OPERATIONS
    # -------------------------------------------------------------------------

    @instrumented("rename")
    async def rename(
        self,
        old_key: str,
        new_name: str,
        is_folder: Optional[bool] = None,
    ) -> Result[StorageKey, CloudCoreError]:
        """
        Rename a file or folder within its parent folder.

        File names keep the original extension unless ``new_name``
        carries its own.
        """
        parsed = sanitize(old_key, folder=bool(is_folder))
        if parsed.is_err():
            return parsed
        old = parsed.value

        name = new_name.strip().rstrip("/")
        if old.is_folder:
            if not validate_folder_name(name):
                return Err(PathError.invalid_path(new_name, "invalid folder name"))
        else:
            if not validate_file_name(name):
                return Err(PathError.invalid_path(new_name, "invalid file name"))
            name = preserve_file_extension(name, old.name)

        target = join_key(old.parent, name, is_folder=old.is_folder)
        if target.is_err():
            return target
        new = target.value

        if new == old:
            logger.debug(f"Rename of {old.value} is a no-op")
            return Ok(old)
        return await self._relocate(old, new)

    @instrumented("move")
    async def move(
        self,
        key: str,
        destination_folder: str,
    ) -> Result[StorageKey, CloudCoreError]:
        """Move a file or folder into ``destination_folder`` (root for "")."""
        parsed = sanitize(key)
        if parsed.is_err():
            return parsed
        source = parsed.value

        destination = sanitize_prefix(destination_folder)
        if destination.is_err():
            return destination
        folder = destination.value

        if source.is_folder and folder.value.startswith(source.value):
            return Err(PathError.invalid_path(
                destination_folder, "cannot move a folder into itself",
            ))

        target = join_key(folder, source.name, is_folder=source.is_folder)
        if target.is_err():
            return target
        new = target.value

        if new == source:
            return Ok(source)
        return await self._relocate(source, new)

    @instrumented("create_folder")
    async def create_folder(self, folder_key: str) -> Result[StorageKey, CloudCoreError]:
        """Write the empty marker object that makes a folder visible."""
        parsed = sanitize(folder_key, folder=True)
        if parsed.is_err():
            return parsed
        key = parsed.value
        if not validate_folder_name(key.name):
            return Err(PathError.invalid_path(folder_key, "invalid folder name"))

        try:
            await self.ctx.call(
                OperationCategory.UPLOAD,
                "put_object",
                lambda s3: s3.put_object(Bucket=self.ctx.bucket, Key=key.value, Body=b""),
            )
        except CloudCoreError:
            raise
        except Exception as e:
            return Err(StoreError.from_exception(e, "create_folder", key.value))

        logger.info(f"Created folder {key.value}")
        return Ok(key)

    # -------------------------------------------------------------------------
    # COPY + DELETE
    # -------------------------------------------------------------------------

    async def _relocate(self, old: StorageKey, new: StorageKey) -> Result[StorageKey, CloudCoreError]:
        self.ctx.require_client("rename")
        if old.is_folder:
            return await self._move_folder(old, new)
        return await self._move_file(old, new)

    async def _copy(self, source: str, target: str) -> None:
        await self.ctx.call(
            OperationCategory.COPY,
            "copy_object",
            lambda s3: s3.copy_object(
                Bucket=self.ctx.bucket,
                CopySource={"Bucket": self.ctx.bucket, "Key": source},
                Key=target,
            ),
        )

    async def _move_file(self, old: StorageKey, new: StorageKey) -> Result[StorageKey, CloudCoreError]:
        try:
            await self._copy(old.value, new.value)
        except CloudCoreError:
            raise
        except Exception as e:
            return Err(StoreError.from_exception(e, "copy", old.value))

        return await self._delete_originals(old, new, [old.value], copied=1)

    async def _move_folder(self, old: StorageKey, new: StorageKey) -> Result[StorageKey, CloudCoreError]:
        originals: list[str] = []
        window: InFlightWindow[None] = InFlightWindow(
            self.ctx.transfer.max_concurrent_copies, name=f"copy:{old.value}"
        )

        try:
            async with window:
                async for page in self.listing.scan(old.value):
                    for obj in page:
                        originals.append(obj.key)
                        target = new.value + obj.key[len(old.value):]
                        await window.submit(functools.partial(self._copy, obj.key, target))
                await window.drain()
        except Exception as e:
            error = e if isinstance(e, CloudCoreError) else StoreError.from_exception(e, "copy", old.value)
            if window.submitted <= 1 and window.completed == 0:
                return Err(error)
            logger.error(
                f"Moving {old.value} to {new.value} stopped after "
                f"{window.completed} of {len(originals)} copies: {error}"
            )
            return Err(TransferError.rename_incomplete(
                old.value,
                new.value,
                copied=window.completed,
                reason=error.message,
                remaining=originals,
                cause=e,
            ))

        if not originals:
            return Err(CloudCoreError(
                code=ErrorCode.NOT_FOUND,
                message="Folder not found",
                context={"key": old.value},
            ))

        logger.info(f"Copied {len(originals)} object(s) from {old.value} to {new.value}")
        return await self._delete_originals(old, new, originals, copied=len(originals))

    async def _delete_originals(
        self,
        old: StorageKey,
        new: StorageKey,
        originals: list[str],
        copied: int,
    ) -> Result[StorageKey, CloudCoreError]:
        deleted = await self.deleter.delete_keys(originals)
        if deleted.is_err():
            return Err(TransferError.rename_incomplete(
                old.value, new.value, copied=copied,
                reason=f"originals were not deleted ({deleted.error.message})",
                remaining=originals,
                cause=deleted.error,
            ))
        if deleted.value.failed:
            left = deleted.value.failed_keys
            return Err(TransferError.rename_incomplete(
                old.value, new.value, copied=copied,
                reason=f"{len(left)} original(s) could not be deleted",
                remaining=left,
            ))
        return Ok(new)
