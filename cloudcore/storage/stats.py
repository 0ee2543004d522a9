"""
Bucket Statistics

A full recursive scan folded into totals: size, file and folder
counts, and a per-category breakdown by file extension. Pages are
consumed as they arrive, so memory stays flat however large the
bucket is.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from cloudcore.core import constants as C
from cloudcore.core.errors import CloudCoreError
from cloudcore.core.types import Ok, Result
from cloudcore.storage.context import StoreContext, instrumented
from cloudcore.storage.keys import get_file_extension, sanitize_prefix
from cloudcore.storage.listing import ListingEngine
from cloudcore.storage.models import BucketStats, CategoryStats

logger = logging.getLogger(__name__)

_EXTENSION_CATEGORY: dict[str, str] = {
    ext: category
    for category, extensions in C.FILE_CATEGORIES.items()
    for ext in extensions
}


def categorize(key: str) -> str:
    """Category name for a file key ("other" when unknown)."""
    ext = get_file_extension(key.rsplit(C.DELIMITER, 1)[-1]).lstrip(".").lower()
    return _EXTENSION_CATEGORY.get(ext, C.OTHER_CATEGORY)


class StatsEngine:
    __slots__ = ("ctx", "listing")

    def __init__(self, ctx: StoreContext, listing: ListingEngine) -> None:
        self.ctx = ctx
        self.listing = listing

    @instrumented("bucket_stats")
    async def get_bucket_stats(
        self,
        prefix: str = "",
        *,
        abort: Optional[asyncio.Event] = None,
    ) -> Result[BucketStats, CloudCoreError]:
        """
        Aggregate everything under ``prefix`` (whole bucket by default).

        Keys ending in "/" are folder markers and count as folders;
        every other key is a file.
        """
        parsed = sanitize_prefix(prefix)
        if parsed.is_err():
            return parsed

        counts = {name: [0, 0] for name in (*C.FILE_CATEGORIES, C.OTHER_CATEGORY)}
        total_size = file_count = folder_count = 0

        async for page in self.listing.scan(parsed.value.value, abort=abort):
            for obj in page:
                if obj.key.endswith(C.DELIMITER):
                    folder_count += 1
                    continue
                file_count += 1
                total_size += obj.size
                bucket = counts[categorize(obj.key)]
                bucket[0] += 1
                bucket[1] += obj.size

        logger.info(
            f"Stats for {parsed.value.value or '<root>'}: "
            f"{file_count} file(s), {folder_count} folder(s), {total_size} bytes"
        )
        return Ok(BucketStats(
            total_size=total_size,
            file_count=file_count,
            folder_count=folder_count,
            categories={name: CategoryStats(count, size) for name, (count, size) in counts.items()},
        ))
