"""
Listing Engine: Paginated Folder Views and Recursive Scans

Two shapes of enumeration over the flat key space:
- list(): one "folder" level (Delimiter="/"). Sub-folders come from
  CommonPrefixes, files from Contents, and the folder's own marker
  object is never reported as its child.
- scan(): every key under a prefix (no delimiter), as raw pages.
  Used by batch delete, recursive rename and bucket statistics.

Both are async generators: each call restarts from the first page,
the optional abort event is checked before every page request, and
the first failed page (after retries) ends the sequence with a
CloudCoreError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional

from cloudcore.core import constants as C
from cloudcore.core.errors import CloudCoreError, StoreError, TransferError
from cloudcore.core.types import Ok, Result
from cloudcore.reliability.rate_limiter import OperationCategory
from cloudcore.storage.context import StoreContext, instrumented
from cloudcore.storage.keys import StorageKey, sanitize_prefix
from cloudcore.storage.models import ListPage, ObjectKind, ScannedObject, StorageObject

logger = logging.getLogger(__name__)


class ListingEngine:
    """Delimiter listings and flat scans against one bucket."""

    __slots__ = ("ctx",)

    def __init__(self, ctx: StoreContext) -> None:
        self.ctx = ctx

    # -------------------------------------------------------------------------
    # REQUESTS
    # -------------------------------------------------------------------------

    async def _fetch(
        self,
        prefix: StorageKey,
        token: Optional[str],
        delimiter: Optional[str],
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "Bucket": self.ctx.bucket,
            "Prefix": prefix.value,
            "MaxKeys": self.ctx.transfer.list_page_size,
        }
        if delimiter:
            params["Delimiter"] = delimiter
        if token:
            params["ContinuationToken"] = token

        try:
            return await self.ctx.call(
                OperationCategory.LIST,
                "list_objects_v2",
                lambda s3: s3.list_objects_v2(**params),
            )
        except CloudCoreError:
            raise
        except Exception as e:
            raise StoreError.from_exception(e, "list", prefix.value) from e

    @staticmethod
    def _to_page(prefix: StorageKey, response: dict[str, Any]) -> ListPage:
        items: list[StorageObject] = []

        for entry in response.get("CommonPrefixes", []):
            folder = entry["Prefix"]
            if folder == prefix.value:
                continue
            items.append(StorageObject(
                key=StorageKey(folder),
                display_name=folder[len(prefix.value):].rstrip(C.DELIMITER),
                kind=ObjectKind.FOLDER,
            ))

        for entry in response.get("Contents", []):
            key = entry["Key"]
            if key == prefix.value:
                continue
            items.append(StorageObject(
                key=StorageKey(key),
                display_name=key[len(prefix.value):],
                kind=ObjectKind.FILE,
                size_bytes=int(entry.get("Size", 0)),
                last_modified=entry.get("LastModified"),
            ))

        token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(items=tuple(items), continuation_token=token)

    @staticmethod
    def _prefix(raw: Optional[str]) -> StorageKey:
        result = sanitize_prefix(raw)
        if result.is_err():
            raise result.error
        return result.value

    # -------------------------------------------------------------------------
    # FOLDER LISTING
    # -------------------------------------------------------------------------

    @instrumented("list_page")
    async def list_page(
        self,
        prefix: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Result[ListPage, CloudCoreError]:
        """Fetch a single page of a folder listing."""
        folder = self._prefix(prefix)
        response = await self._fetch(folder, token, C.DELIMITER)
        return Ok(self._to_page(folder, response))

    async def list(
        self,
        prefix: Optional[str] = None,
        *,
        abort: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ListPage]:
        """
        Yield every page of the folder ``prefix``.

        Raises:
            CloudCoreError: INVALID_PATH before any request, CANCELLED
                when ``abort`` is set, or the mapped store error
        """
        folder = self._prefix(prefix)
        seen: set[str] = set()
        token: Optional[str] = None

        while True:
            if abort is not None and abort.is_set():
                raise TransferError.cancelled("list", folder.value)

            response = await self._fetch(folder, token, C.DELIMITER)
            page = self._to_page(folder, response)

            fresh = tuple(i for i in page.items if i.key.value not in seen)
            seen.update(i.key.value for i in fresh)
            yield ListPage(items=fresh, continuation_token=page.continuation_token)

            token = page.continuation_token
            if not token:
                return

    @instrumented("list_all")
    async def list_all(
        self,
        prefix: Optional[str] = None,
        *,
        abort: Optional[asyncio.Event] = None,
    ) -> Result[list[StorageObject], CloudCoreError]:
        """Collect a whole folder listing, folders first."""
        items: list[StorageObject] = []
        async for page in self.list(prefix, abort=abort):
            items.extend(page.items)
        items.sort(key=lambda i: (not i.is_folder, i.display_name.lower()))
        return Ok(items)

    # -------------------------------------------------------------------------
    # RECURSIVE SCAN
    # -------------------------------------------------------------------------

    async def scan(
        self,
        prefix: Optional[str] = None,
        *,
        abort: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[list[ScannedObject]]:
        """
        Yield raw pages of every key under ``prefix``, markers included.

        Raises:
            CloudCoreError: as list()
        """
        folder = self._prefix(prefix)
        token: Optional[str] = None
        pages = 0

        while True:
            if abort is not None and abort.is_set():
                raise TransferError.cancelled("scan", folder.value)

            response = await self._fetch(folder, token, None)
            pages += 1
            yield [
                ScannedObject(
                    key=entry["Key"],
                    size=int(entry.get("Size", 0)),
                    last_modified=entry.get("LastModified"),
                )
                for entry in response.get("Contents", [])
            ]

            token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
            if not token:
                logger.debug(f"Scanned {folder.value or '/'} in {pages} page(s)")
                return
