#!/usr/bin/env python3
"""
cloudcore local demo

Runs the bucket engines against the in-memory store, or against a
real bucket when CLOUDCORE_S3_BUCKET is set.

Usage:
    python -m cloudcore

    # Against a real bucket
    CLOUDCORE_S3_BUCKET=my-bucket CLOUDCORE_S3_REGION=eu-west-1 python -m cloudcore
"""

from __future__ import annotations

import asyncio
import os
import sys

from cloudcore.client import BucketClient
from cloudcore.core.config import CloudCoreConfig, S3Config
from cloudcore.observability.logging import LogLevel, setup_logging
from cloudcore.storage.backends import InMemoryIdentity, InMemoryObjectStore
from cloudcore.storage.upload import BytesSource, UploadRequest


def load_config() -> CloudCoreConfig:
    if os.environ.get("CLOUDCORE_S3_BUCKET"):
        result = CloudCoreConfig.from_env()
        if result.is_err():
            print(f"Configuration error: {result.error}")
            sys.exit(1)
        return result.unwrap()
    return CloudCoreConfig(s3=S3Config(bucket_name="demo-bucket"))


async def demo() -> None:
    print("\n" + "=" * 60)
    print("cloudcore - Bucket Operations Demo")
    print("=" * 60 + "\n")

    config = load_config()
    setup_logging(LogLevel.parse(config.observability.log_level), json_output=False)

    bucket = BucketClient(config)
    if not os.environ.get("CLOUDCORE_S3_BUCKET"):
        bucket.attach(InMemoryObjectStore(bucket="demo-bucket"), InMemoryIdentity())
        print("✓ Using in-memory store")

    async with bucket:
        identity = await bucket.validate_credentials()
        if identity.is_err():
            print(f"Credential check failed: {identity.error.user_message}")
            sys.exit(1)
        print(f"✓ Credentials valid ({identity.unwrap().arn})")

        prefix = "cloudcore-demo/"
        await bucket.create_folder(prefix + "photos")
        batch = bucket.upload_batch(
            [
                UploadRequest(BytesSource(b"\x89PNG" * 64, "cat.png")),
                UploadRequest(BytesSource(b"%PDF" * 256, "report.pdf")),
                UploadRequest(BytesSource(b"hello", "notes.txt")),
            ],
            target_folder=prefix + "photos/",
        )
        uploaded = await batch.run()
        if uploaded.is_ok():
            print(f"1. Uploaded {len(uploaded.unwrap().succeeded_keys)} file(s)")

        listing = await bucket.list_all(prefix + "photos/")
        for item in listing.unwrap_or([]):
            print(f"   - {item.display_name} ({item.size_bytes} bytes)")

        renamed = await bucket.rename(prefix + "photos/", "pics", is_folder=True)
        if renamed.is_ok():
            print(f"2. Renamed folder to {renamed.unwrap()}")
        else:
            print(f"   Error: {renamed.error}")

        link = await bucket.generate_share_link(prefix + "pics/cat.png", 3600)
        if link.is_ok():
            print(f"3. Share link: {link.unwrap()[:72]}...")

        stats = await bucket.get_bucket_stats(prefix)
        if stats.is_ok():
            s = stats.unwrap()
            print(f"4. Stats: {s.file_count} file(s), {s.folder_count} folder(s), {s.total_size} bytes")

        await bucket.delete_items([prefix])
        print("5. Cleaned up")

    print("\n--- Metrics ---\n")
    print(bucket.export_metrics())
    print("✓ Demo complete")
    print("=" * 60 + "\n")


async def main() -> None:
    """Main entry point."""
    try:
        await demo()
    except KeyboardInterrupt:
        print("\nInterrupted")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
