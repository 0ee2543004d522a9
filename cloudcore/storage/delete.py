"""
Batch Delete Engine

delete_keys():
- Every key is sanitized first; one invalid key rejects the call
  before anything is deleted.
- Keys are de-duplicated and cut into chunks of delete_batch_size
  (the store accepts at most 1000 per request).
- Chunks are dispatched concurrently, each as one delete_objects call
  under a DELETE permit with retry.
- Per-key Errors in a response become FailedKeys; a chunk whose
  request fails outright marks all of its keys failed.

delete_items() expands folders through a recursive scan (their
marker object included) before handing everything to delete_keys().
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Iterable, Sequence, Union

from cloudcore.core.errors import CloudCoreError, StoreError
from cloudcore.core.types import Ok, Result
from cloudcore.reliability.rate_limiter import OperationCategory
from cloudcore.storage.context import StoreContext, instrumented
from cloudcore.storage.keys import StorageKey, sanitize_all
from cloudcore.storage.listing import ListingEngine
from cloudcore.storage.models import BatchResult, FailedKey, StorageObject

logger = logging.getLogger(__name__)

KeyLike = Union[str, StorageKey]


class DeleteEngine:
    """Bulk deletion for one bucket."""

    __slots__ = ("ctx", "listing")

    def __init__(self, ctx: StoreContext, listing: ListingEngine) -> None:
        self.ctx = ctx
        self.listing = listing

    @instrumented("delete")
    async def delete_keys(self, keys: Iterable[KeyLike]) -> Result[BatchResult, CloudCoreError]:
        """
        Delete many keys.

        Returns:
            Ok(BatchResult) even when some keys failed; Err only for
            invalid input or a missing store client
        """
        parsed = sanitize_all(k.value if isinstance(k, StorageKey) else k for k in keys)
        if parsed.is_err():
            return parsed

        unique = list(dict.fromkeys(k.value for k in parsed.value))
        if not unique:
            return Ok(BatchResult())
        self.ctx.require_client("delete")

        size = self.ctx.transfer.delete_batch_size
        chunks = [unique[i:i + size] for i in range(0, len(unique), size)]
        results = await asyncio.gather(*(self._delete_chunk(chunk) for chunk in chunks))
        merged = functools.reduce(BatchResult.merge, results, BatchResult())

        logger.info(
            f"Deleted {len(merged.succeeded_keys)} of {len(unique)} key(s) "
            f"in {len(chunks)} request(s), {len(merged.failed)} failed"
        )
        return Ok(merged)

    async def _delete_chunk(self, chunk: Sequence[str]) -> BatchResult:
        try:
            response = await self.ctx.call(
                OperationCategory.DELETE,
                "delete_objects",
                lambda s3: s3.delete_objects(
                    Bucket=self.ctx.bucket,
                    Delete={"Objects": [{"Key": k} for k in chunk], "Quiet": False},
                ),
            )
        except CloudCoreError as e:
            return BatchResult.all_failed(chunk, e.code.name, e.message)
        except Exception as e:
            error = StoreError.from_exception(e, "delete")
            logger.error(f"Delete request for {len(chunk)} key(s) failed: {error}")
            return BatchResult.all_failed(
                chunk, error.store_code or error.code.name, error.message,
            )

        errors = {entry["Key"]: entry for entry in response.get("Errors", [])}
        return BatchResult(
            succeeded_keys=tuple(StorageKey(k) for k in chunk if k not in errors),
            failed=tuple(
                FailedKey(
                    key=k,
                    error_code=errors[k].get("Code", "Unknown"),
                    message=errors[k].get("Message", ""),
                )
                for k in chunk if k in errors
            ),
        )

    @instrumented("delete_items")
    async def delete_items(
        self,
        items: Iterable[Union[StorageObject, KeyLike]],
    ) -> Result[BatchResult, CloudCoreError]:
        """
        Delete files and whole folders.

        A folder is everything under its prefix plus its marker key.
        """
        raw = [
            item.key.value if isinstance(item, StorageObject)
            else item.value if isinstance(item, StorageKey)
            else item
            for item in items
        ]
        parsed = sanitize_all(raw)
        if parsed.is_err():
            return parsed

        keys: list[str] = []
        for key in parsed.value:
            keys.append(key.value)
            if key.is_folder:
                async for page in self.listing.scan(key.value):
                    keys.extend(obj.key for obj in page)

        keys = list(dict.fromkeys(keys))
        logger.debug(f"Expanded {len(raw)} item(s) to {len(keys)} key(s)")
        return await self.delete_keys(keys)

