"""
Integration Tests: Upload Engine

Tests:
    - Routing by size (single request vs multipart)
    - Multipart part ordering, abort on failure and on cancel
    - Validation before any request (path, size cap)
    - Progress events
    - Batches: conflict detection and resolution, nested paths,
      partial failure, bounded concurrency
"""

import asyncio

import pytest

from cloudcore.core.errors import ErrorCode
from cloudcore.pipeline.progress import ProgressChannel
from cloudcore.storage.backends import InMemoryObjectStore
from cloudcore.storage.models import TransferState
from cloudcore.storage.upload import (
    BytesSource,
    ConflictDecision,
    FileSource,
    UploadRequest,
    UploadTask,
)
from tests.conftest import BUCKET, make_client


def payload(size):
    return bytes(i % 251 for i in range(size))


class CancelOnRead:
    """Source that cancels its own task as soon as a part is read."""

    def __init__(self, data, name):
        self.inner = BytesSource(data, name)
        self.name = name
        self.size = len(data)
        self.content_type = self.inner.content_type
        self.task = None

    async def read(self, offset, length):
        self.task.cancel()
        return await self.inner.read(offset, length)


class TestSingleUpload:
    """Tests for uploads at or under the multipart threshold."""

    @pytest.mark.asyncio()
    async def test_threshold_uses_put_object(self, store, bucket):
        """Test a file of exactly the threshold goes in one request."""
        data = payload(1024)

        key = (await bucket.upload(BytesSource(data, "a.bin"), "files/a.bin")).unwrap()

        assert key.value == "files/a.bin"
        assert store.objects["files/a.bin"].data == data
        assert store.call_count("put_object") == 1
        assert store.call_count("create_multipart_upload") == 0

    @pytest.mark.asyncio()
    async def test_content_type_guessed(self, store, bucket):
        """Test the content type follows the file name."""
        await bucket.upload(BytesSource(b"png", "cat.png"), "cat.png")

        assert store.calls_of("put_object")[0]["ContentType"] == "image/png"

    @pytest.mark.asyncio()
    async def test_zero_byte_upload(self, store, bucket):
        """Test empty files are allowed."""
        result = await bucket.upload(BytesSource(b"", "empty.txt"), "empty.txt")

        assert result.is_ok()
        assert store.objects["empty.txt"].data == b""

    @pytest.mark.asyncio()
    async def test_key_is_sanitized(self, store, bucket):
        """Test slashes are cleaned before upload."""
        key = (await bucket.upload(BytesSource(b"x", "a.txt"), "//docs//a.txt")).unwrap()

        assert key.value == "docs/a.txt"
        assert store.keys() == ["docs/a.txt"]

    @pytest.mark.asyncio()
    async def test_bytes_metric(self, bucket):
        """Test uploaded bytes are counted."""
        await bucket.upload(BytesSource(payload(300), "a.bin"), "a.bin")

        assert bucket.metrics.bytes.get(direction="upload") == 300
        assert bucket.metrics.operations.get(operation="upload", outcome="ok") == 1


class TestMultipartUpload:
    """Tests for uploads above the threshold."""

    @pytest.mark.asyncio()
    async def test_over_threshold_uses_multipart(self, store, bucket):
        """Test threshold + 1 bytes is split into ordered parts."""
        data = payload(1025)

        result = await bucket.upload(BytesSource(data, "big.bin"), "big.bin")

        assert result.is_ok()
        assert store.objects["big.bin"].data == data
        assert store.call_count("put_object") == 0
        assert store.call_count("upload_part") == 5
        [complete] = store.calls_of("complete_multipart_upload")
        numbers = [p["PartNumber"] for p in complete["MultipartUpload"]["Parts"]]
        assert numbers == [1, 2, 3, 4, 5]
        assert store.pending_uploads == 0

    @pytest.mark.asyncio()
    async def test_parts_in_flight_are_bounded(self):
        """Test at most max_concurrent_parts parts are sent at once."""
        store = InMemoryObjectStore(BUCKET, latency=0.002)
        client = make_client(store, max_concurrent_parts=2)

        await client.upload(BytesSource(payload(2048), "big.bin"), "big.bin")

        assert store.peak_concurrency("upload_part") == 2

    @pytest.mark.asyncio()
    async def test_part_failure_aborts(self, store, bucket):
        """Test a failed part aborts the upload and nothing is stored."""
        store.inject("upload_part", "AccessDenied", when=lambda p: p["PartNumber"] == 3)

        result = await bucket.upload(BytesSource(payload(1500), "big.bin"), "big.bin")

        assert result.error.code is ErrorCode.ACCESS_DENIED
        assert store.call_count("abort_multipart_upload") == 1
        assert store.call_count("complete_multipart_upload") == 0
        assert store.pending_uploads == 0
        assert "big.bin" not in store.objects

    @pytest.mark.asyncio()
    async def test_transient_part_failure_retried(self, store, bucket):
        """Test a throttled part is retried and the upload completes."""
        data = payload(1500)
        store.inject("upload_part", "SlowDown", when=lambda p: p["PartNumber"] == 2)

        result = await bucket.upload(BytesSource(data, "big.bin"), "big.bin")

        assert result.is_ok()
        assert store.objects["big.bin"].data == data
        assert bucket.metrics.retries.get(operation="upload_part") == 1

    @pytest.mark.asyncio()
    async def test_create_not_retried(self, store, bucket):
        """Test a throttled create is reported as transient, not retried."""
        store.inject("create_multipart_upload", "SlowDown")

        result = await bucket.upload(BytesSource(payload(1500), "big.bin"), "big.bin")

        assert result.error.code is ErrorCode.TRANSIENT
        assert store.call_count("create_multipart_upload") == 1

    @pytest.mark.asyncio()
    async def test_cancel_mid_upload_aborts(self, store, make_bucket):
        """Test cancelling between parts aborts the multipart upload."""
        client = make_bucket(max_concurrent_parts=1)
        source = CancelOnRead(payload(1500), "big.bin")
        task = UploadTask("big.bin", source)
        source.task = task

        result = await client.upload(source, "big.bin", task=task)

        assert result.error.code is ErrorCode.CANCELLED
        assert task.state is TransferState.FAILED
        assert store.call_count("upload_part") < 6
        assert store.call_count("abort_multipart_upload") == 1
        assert store.pending_uploads == 0
        assert "big.bin" not in store.objects

    @pytest.mark.asyncio()
    async def test_file_source(self, store, bucket, tmp_path):
        """Test local files are read by range."""
        data = payload(2000)
        path = tmp_path / "video.mp4"
        path.write_bytes(data)

        source = FileSource(path)
        result = await bucket.upload(source, "videos/video.mp4")

        assert result.is_ok()
        assert source.content_type == "video/mp4"
        assert store.objects["videos/video.mp4"].data == data


class TestUploadValidation:
    """Tests for checks made before any request."""

    @pytest.mark.asyncio()
    async def test_size_cap(self, store, bucket):
        """Test oversized files are refused without a request."""
        result = await bucket.upload(BytesSource(payload(64 * 1024 + 1), "huge.bin"), "huge.bin")

        assert result.error.code is ErrorCode.SIZE_EXCEEDED
        assert store.calls == []

    @pytest.mark.asyncio()
    async def test_invalid_key(self, store, bucket):
        """Test traversal keys are refused without a request."""
        result = await bucket.upload(BytesSource(b"x", "a.txt"), "../a.txt")

        assert result.error.code is ErrorCode.INVALID_PATH
        assert store.calls == []

    @pytest.mark.asyncio()
    async def test_folder_key_refused(self, store, bucket):
        """Test a folder key is not an upload target."""
        result = await bucket.upload(BytesSource(b"x", "a.txt"), "docs/")

        assert result.error.code is ErrorCode.INVALID_ARGUMENT
        assert store.calls == []

    @pytest.mark.asyncio()
    async def test_cancelled_before_start(self, store, bucket):
        """Test a task cancelled up front never sends a byte."""
        source = BytesSource(b"x", "a.txt")
        task = UploadTask("a.txt", source)
        task.cancel()

        result = await bucket.upload(source, "a.txt", task=task)

        assert result.error.code is ErrorCode.CANCELLED
        assert store.calls == []


    @pytest.mark.asyncio()
    async def test_unreadable_file(self, store, bucket, tmp_path):
        """Test a file that vanished before reading fails the upload as a result."""
        path = tmp_path / "gone.txt"
        path.write_bytes(b"data")
        source = FileSource(path)
        path.unlink()

        result = await bucket.upload(source, "gone.txt")

        assert result.error.code is ErrorCode.OPERATION_FAILED
        assert isinstance(result.error.cause, FileNotFoundError)
        assert "gone.txt" in result.error.message
        assert store.calls == []

    @pytest.mark.asyncio()
    async def test_unreadable_file_multipart(self, store, bucket, tmp_path):
        """Test a read failure during multipart aborts the upload."""
        path = tmp_path / "gone.bin"
        path.write_bytes(payload(2000))
        source = FileSource(path)
        path.unlink()

        result = await bucket.upload(source, "gone.bin")

        assert result.error.code is ErrorCode.OPERATION_FAILED
        assert isinstance(result.error.cause, FileNotFoundError)
        assert store.call_count("abort_multipart_upload") == 1
        assert store.pending_uploads == 0


class TestUploadProgress:
    """Tests for progress reporting."""

    @pytest.mark.asyncio()
    async def test_multipart_progress(self, bucket):
        """Test one event per acknowledged part plus a final event."""
        progress = ProgressChannel()

        await bucket.upload(BytesSource(payload(1025), "big.bin"), "big.bin", progress=progress)
        events = [event async for event in progress]

        loaded = [e.loaded for e in events]
        assert loaded == sorted(loaded)
        assert len(events) == 6
        assert events[-1].done
        assert events[-1].loaded == events[-1].total == 1025
        assert progress.closed

    @pytest.mark.asyncio()
    async def test_channel_closed_on_failure(self, bucket):
        """Test the progress channel is closed even when the upload fails."""
        progress = ProgressChannel()

        await bucket.upload(BytesSource(b"x", "a.txt"), "../a.txt", progress=progress)

        assert progress.closed
        assert [event async for event in progress] == []


class TestUploadBatch:
    """Tests for batch uploads."""

    @pytest.mark.asyncio()
    async def test_conflict_detected_before_put(self, store, bucket):
        """Test an existing name waits for a decision; keep-both renames it."""
        store.seed("docs/report.pdf", data=b"old")
        batch = bucket.upload_batch(
            [
                UploadRequest(BytesSource(b"new", "report.pdf")),
                UploadRequest(BytesSource(b"notes", "notes.txt")),
            ],
            "docs",
        )

        runner = asyncio.ensure_future(batch.run())
        await batch.planned.wait()

        [conflict] = batch.pending_conflicts
        assert conflict.key == "docs/report.pdf"
        assert store.objects["docs/report.pdf"].data == b"old"

        assert batch.resolve(conflict, ConflictDecision.keep_both()).is_ok()
        result = (await runner).unwrap()

        assert result.ok
        assert sorted(k.value for k in result.succeeded_keys) == [
            "docs/notes.txt",
            "docs/report (1).pdf",
        ]
        assert store.objects["docs/report.pdf"].data == b"old"
        assert store.objects["docs/report (1).pdf"].data == b"new"

    @pytest.mark.asyncio()
    async def test_skip(self, store, bucket):
        """Test a skipped conflict is left untouched."""
        store.seed("docs/report.pdf", data=b"old")
        batch = bucket.upload_batch([UploadRequest(BytesSource(b"new", "report.pdf"))], "docs/")

        runner = asyncio.ensure_future(batch.run())
        await batch.planned.wait()
        batch.resolve(batch.pending_conflicts[0], ConflictDecision.skip())
        result = (await runner).unwrap()

        assert result.succeeded_keys == ()
        assert result.ok
        assert batch.tasks[0].state is TransferState.SKIPPED
        assert store.call_count("put_object") == 0

    @pytest.mark.asyncio()
    async def test_overwrite(self, store, bucket):
        """Test overwrite replaces the existing object."""
        store.seed("docs/report.pdf", data=b"old")

        async def overwrite(task):
            return ConflictDecision.overwrite()

        batch = bucket.upload_batch(
            [UploadRequest(BytesSource(b"new", "report.pdf"))], "docs", resolver=overwrite,
        )
        result = (await batch.run()).unwrap()

        assert [k.value for k in result.succeeded_keys] == ["docs/report.pdf"]
        assert store.objects["docs/report.pdf"].data == b"new"

    @pytest.mark.asyncio()
    async def test_rename_decision(self, store, bucket):
        """Test a conflict can be given a new name."""
        store.seed("docs/report.pdf")

        async def rename(task):
            return ConflictDecision.rename("report-v2.pdf")

        batch = bucket.upload_batch(
            [UploadRequest(BytesSource(b"new", "report.pdf"))], "docs", resolver=rename,
        )
        result = (await batch.run()).unwrap()

        assert [k.value for k in result.succeeded_keys] == ["docs/report-v2.pdf"]

    @pytest.mark.asyncio()
    async def test_rename_to_taken_name_fails_task(self, store, bucket):
        """Test renaming onto another existing name fails that task."""
        store.seed("docs/report.pdf", "docs/other.pdf")

        async def rename(task):
            return ConflictDecision.rename("other.pdf")

        batch = bucket.upload_batch(
            [UploadRequest(BytesSource(b"new", "report.pdf"))], "docs", resolver=rename,
        )
        result = (await batch.run()).unwrap()

        assert result.failed[0].error_code == "CONFLICT"
        assert result.error().code is ErrorCode.PARTIAL_BATCH_FAILURE

    @pytest.mark.asyncio()
    async def test_resolver_failure_fails_task(self, store, bucket):
        """Test a resolver that raises fails only its task."""
        store.seed("report.pdf")

        async def broken(task):
            raise RuntimeError("dialog closed")

        batch = bucket.upload_batch(
            [
                UploadRequest(BytesSource(b"new", "report.pdf")),
                UploadRequest(BytesSource(b"ok", "fine.txt")),
            ],
            resolver=broken,
        )
        result = (await batch.run()).unwrap()

        assert [k.value for k in result.succeeded_keys] == ["fine.txt"]
        assert result.failed[0].key == "report.pdf"
        assert result.failed[0].error_code == "INVALID_ARGUMENT"

    @pytest.mark.asyncio()
    async def test_duplicates_within_batch(self, store, bucket):
        """Test two files with the same name in one batch conflict."""

        async def keep_both(task):
            return ConflictDecision.keep_both()

        batch = bucket.upload_batch(
            [
                UploadRequest(BytesSource(b"1", "a.txt")),
                UploadRequest(BytesSource(b"2", "a.txt")),
            ],
            resolver=keep_both,
        )
        result = (await batch.run()).unwrap()

        assert result.ok
        assert store.keys() == ["a (1).txt", "a.txt"]

    @pytest.mark.asyncio()
    async def test_nested_paths_never_conflict(self, store, bucket):
        """Test folder uploads keep their relative paths."""
        store.seed("docs/album/", "docs/album/2024/a.jpg", data=b"old")
        batch = bucket.upload_batch(
            [
                UploadRequest(BytesSource(b"a", "a.jpg"), relative_path="album/2024/a.jpg"),
                UploadRequest(BytesSource(b"b", "b.jpg"), relative_path="album/b.jpg"),
            ],
            "docs",
        )

        result = (await batch.run()).unwrap()

        assert batch.pending_conflicts == []
        assert sorted(k.value for k in result.succeeded_keys) == [
            "docs/album/2024/a.jpg",
            "docs/album/b.jpg",
        ]
        assert store.objects["docs/album/2024/a.jpg"].data == b"a"

    @pytest.mark.asyncio()
    async def test_partial_failure(self, store, bucket):
        """Test one bad file does not stop the others."""
        batch = bucket.upload_batch([
            UploadRequest(BytesSource(b"ok", "fine.txt")),
            UploadRequest(BytesSource(payload(64 * 1024 + 1), "huge.bin")),
            UploadRequest(BytesSource(b"x", "bad.txt"), relative_path="../bad.txt"),
        ])

        result = (await batch.run()).unwrap()

        assert [k.value for k in result.succeeded_keys] == ["fine.txt"]
        assert sorted(f.error_code for f in result.failed) == ["INVALID_PATH", "SIZE_EXCEEDED"]
        assert result.error().code is ErrorCode.PARTIAL_BATCH_FAILURE
        assert store.call_count("put_object") == 1

    @pytest.mark.asyncio()
    async def test_unreadable_file_in_batch(self, store, bucket, tmp_path):
        """Test an unreadable file is one failed key and the rest still upload."""
        gone = tmp_path / "gone.txt"
        gone.write_bytes(b"data")
        bad = FileSource(gone)
        gone.unlink()
        good = tmp_path / "good.txt"
        good.write_bytes(b"fine")

        batch = bucket.upload_batch([UploadRequest(bad), UploadRequest(FileSource(good))])
        result = (await batch.run()).unwrap()

        assert [k.value for k in result.succeeded_keys] == ["good.txt"]
        assert result.failed_keys == ("gone.txt",)
        assert result.failed[0].error_code == "OPERATION_FAILED"
        assert store.objects["good.txt"].data == b"fine"
        assert [t.state for t in batch.tasks] == [TransferState.FAILED, TransferState.COMPLETED]

    @pytest.mark.asyncio()
    async def test_batch_width_bounded(self):
        """Test at most max_concurrent_uploads files are in flight."""
        store = InMemoryObjectStore(BUCKET, latency=0.002)
        client = make_client(store, max_concurrent_uploads=2)
        batch = client.upload_batch([
            UploadRequest(BytesSource(b"x", f"f{n}.txt")) for n in range(6)
        ])

        result = (await batch.run()).unwrap()

        assert len(result.succeeded_keys) == 6
        assert store.peak_concurrency("put_object") == 2

    @pytest.mark.asyncio()
    async def test_cancel_pending_conflict(self, store, bucket):
        """Test cancelling a batch fails a task still awaiting a decision."""
        store.seed("report.pdf")
        batch = bucket.upload_batch([UploadRequest(BytesSource(b"new", "report.pdf"))])

        runner = asyncio.ensure_future(batch.run())
        await batch.planned.wait()
        batch.cancel()
        result = (await runner).unwrap()

        assert result.failed[0].error_code == "CANCELLED"
        assert store.call_count("put_object") == 0

    @pytest.mark.asyncio()
    async def test_resolve_requires_pending_task(self, bucket):
        """Test only tasks awaiting a decision can be resolved."""
        batch = bucket.upload_batch([UploadRequest(BytesSource(b"x", "a.txt"))])
        await batch.run()

        result = batch.resolve(batch.tasks[0], ConflictDecision.overwrite())

        assert result.error.code is ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio()
    async def test_run_once(self, bucket):
        """Test a batch cannot be started twice."""
        batch = bucket.upload_batch([])

        assert (await batch.run()).unwrap().ok
        assert (await batch.run()).error.code is ErrorCode.INVALID_ARGUMENT
