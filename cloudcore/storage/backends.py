"""
In-Memory Object Store: S3-Compatible Backend for Development/Testing

Implements the ObjectStoreClient protocol with the S3 request and
response shapes, so engines run unchanged against it:
- Delimiter listings with CommonPrefixes, MaxKeys and continuation tokens
- Multipart uploads (create/upload_part/complete/abort)
- Batch delete with per-key Errors
- Pre-signed URL generation (fake host, no signing)

Failures are raised as real botocore exceptions (ClientError with the
S3 error code and HTTP status), which keeps the error mapping and the
retry classification honest.

Testing hooks:
- inject(): fail the next N calls of a method, optionally only for
  calls whose parameters match a predicate
- deny_delete(): per-key AccessDenied entries in delete_objects
- calls / call_count(): record of every request
- peak_concurrency(): maximum simultaneous in-flight calls per method
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union
from urllib.parse import quote, unquote
from uuid import uuid4

from botocore.exceptions import ClientError

from cloudcore.core import constants as C


def client_error(
    code: str,
    message: str = "",
    status: int = 400,
    operation: str = "Unknown",
) -> ClientError:
    """Build a botocore ClientError the way the S3 client raises it."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


_OPERATION_NAMES = {
    "list_objects_v2": "ListObjectsV2",
    "put_object": "PutObject",
    "get_object": "GetObject",
    "copy_object": "CopyObject",
    "delete_objects": "DeleteObjects",
    "create_multipart_upload": "CreateMultipartUpload",
    "upload_part": "UploadPart",
    "complete_multipart_upload": "CompleteMultipartUpload",
    "abort_multipart_upload": "AbortMultipartUpload",
    "head_bucket": "HeadBucket",
    "get_caller_identity": "GetCallerIdentity",
}


@dataclass
class StoredObject:
    data: bytes
    content_type: str = "application/octet-stream"
    etag: str = ""
    last_modified: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class _MultipartUpload:
    key: str
    content_type: str
    parts: dict[int, bytes] = field(default_factory=dict)


@dataclass
class _Fault:
    error: BaseException
    remaining: int
    when: Optional[Callable[[dict[str, Any]], bool]] = None


class MemoryBody:
    """get_object Body: async reads over an in-memory buffer."""

    __slots__ = ("_data", "_offset", "_closed")

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0
        self._closed = False

    async def read(self, amt: Optional[int] = None) -> bytes:
        if self._closed:
            raise ValueError("read on closed body")
        await asyncio.sleep(0)
        end = len(self._data) if amt is None else min(len(self._data), self._offset + amt)
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def close(self) -> None:
        self._closed = True

    async def __aenter__(self) -> MemoryBody:
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.close()


class InMemoryObjectStore:
    """
    In-memory S3 bucket.

    Example:
        store = InMemoryObjectStore("media")
        await store.put_object(Bucket="media", Key="photos/a.jpg", Body=b"...")
        page = await store.list_objects_v2(Bucket="media", Prefix="photos/", Delimiter="/")
    """

    def __init__(
        self,
        bucket: str = "test-bucket",
        latency: float = 0.0,
        min_part_size: int = 0,
    ) -> None:
        self.bucket = bucket
        self.objects: dict[str, StoredObject] = {}
        self.latency = latency
        self.min_part_size = min_part_size
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._uploads: dict[str, _MultipartUpload] = {}
        self._faults: dict[str, list[_Fault]] = defaultdict(list)
        self._denied_deletes: set[str] = set()
        self._active: dict[str, int] = defaultdict(int)
        self._peak: dict[str, int] = defaultdict(int)

    # -------------------------------------------------------------------------
    # TESTING HOOKS
    # -------------------------------------------------------------------------

    def inject(
        self,
        method: str,
        error: Union[BaseException, str],
        times: int = 1,
        when: Optional[Callable[[dict[str, Any]], bool]] = None,
    ) -> None:
        """
        Make the next ``times`` calls of ``method`` raise ``error``.

        A string is turned into a ClientError with that code (5xx for
        retryable codes, 400 otherwise).
        """
        if isinstance(error, str):
            status = 503 if error in C.RETRYABLE_ERROR_CODES else 400
            if error in {"AccessDenied", "Forbidden"}:
                status = 403
            error = client_error(error, status=status, operation=_OPERATION_NAMES.get(method, method))
        self._faults[method].append(_Fault(error, times, when))

    def deny_delete(self, *keys: str) -> None:
        """delete_objects reports AccessDenied for these keys."""
        self._denied_deletes.update(keys)

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def calls_of(self, method: str) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == method]

    def peak_concurrency(self, method: str) -> int:
        return self._peak[method]

    @property
    def pending_uploads(self) -> int:
        return len(self._uploads)

    def keys(self) -> list[str]:
        return sorted(self.objects)

    def seed(self, *keys: str, data: bytes = b"x") -> None:
        """Create objects directly, bypassing the request path."""
        for key in keys:
            self.objects[key] = StoredObject(
                data=b"" if key.endswith("/") else data,
                etag=self._etag(data),
            )

    async def _enter(self, method: str, params: dict[str, Any]) -> None:
        self.calls.append((method, params))
        self._active[method] += 1
        self._peak[method] = max(self._peak[method], self._active[method])
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            else:
                await asyncio.sleep(0)
            for fault in self._faults.get(method, []):
                if fault.remaining > 0 and (fault.when is None or fault.when(params)):
                    fault.remaining -= 1
                    raise fault.error
            if method != "get_caller_identity" and params.get("Bucket") != self.bucket:
                raise client_error(
                    "NoSuchBucket", "The specified bucket does not exist", 404,
                    _OPERATION_NAMES[method],
                )
        except BaseException:
            self._active[method] -= 1
            raise

    def _leave(self, method: str) -> None:
        self._active[method] -= 1

    @staticmethod
    def _etag(data: bytes) -> str:
        return '"' + hashlib.md5(data).hexdigest() + '"'

    @staticmethod
    def _to_bytes(body: Any) -> bytes:
        if body is None:
            return b""
        if isinstance(body, (bytes, bytearray, memoryview)):
            return bytes(body)
        if isinstance(body, str):
            return body.encode("utf-8")
        return body.read()

    # -------------------------------------------------------------------------
    # S3 API
    # -------------------------------------------------------------------------

    async def head_bucket(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("head_bucket", kwargs)
        self._leave("head_bucket")
        return {"ResponseMetadata": {"HTTPStatusCode": 200}}

    async def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("list_objects_v2", kwargs)
        try:
            prefix = kwargs.get("Prefix", "")
            delimiter = kwargs.get("Delimiter")
            max_keys = min(kwargs.get("MaxKeys", C.MAX_KEYS_PER_LIST), C.MAX_KEYS_PER_LIST)
            token = kwargs.get("ContinuationToken")

            entries: list[tuple[str, bool]] = []
            seen_prefixes: set[str] = set()
            for key in sorted(self.objects):
                if not key.startswith(prefix):
                    continue
                rest = key[len(prefix):]
                if delimiter and delimiter in rest:
                    common = prefix + rest[: rest.index(delimiter) + len(delimiter)]
                    if common not in seen_prefixes:
                        seen_prefixes.add(common)
                        entries.append((common, True))
                else:
                    entries.append((key, False))
            entries.sort(key=lambda e: e[0])

            if token is not None:
                entries = [e for e in entries if e[0] > token]

            page = entries[:max_keys]
            truncated = len(entries) > max_keys

            response: dict[str, Any] = {
                "Name": self.bucket,
                "Prefix": prefix,
                "MaxKeys": max_keys,
                "KeyCount": len(page),
                "IsTruncated": truncated,
            }
            if delimiter:
                response["Delimiter"] = delimiter
            contents = [
                {
                    "Key": name,
                    "Size": self.objects[name].size,
                    "LastModified": self.objects[name].last_modified,
                    "ETag": self.objects[name].etag,
                }
                for name, is_prefix in page if not is_prefix
            ]
            prefixes = [{"Prefix": name} for name, is_prefix in page if is_prefix]
            if contents:
                response["Contents"] = contents
            if prefixes:
                response["CommonPrefixes"] = prefixes
            if truncated:
                response["NextContinuationToken"] = page[-1][0]
            return response
        finally:
            self._leave("list_objects_v2")

    async def put_object(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("put_object", kwargs)
        try:
            data = self._to_bytes(kwargs.get("Body"))
            etag = self._etag(data)
            self.objects[kwargs["Key"]] = StoredObject(
                data=data,
                content_type=kwargs.get("ContentType", "application/octet-stream"),
                etag=etag,
                metadata=dict(kwargs.get("Metadata") or {}),
            )
            return {"ETag": etag}
        finally:
            self._leave("put_object")

    async def get_object(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("get_object", kwargs)
        try:
            obj = self.objects.get(kwargs["Key"])
            if obj is None:
                raise client_error(
                    "NoSuchKey", "The specified key does not exist.", 404, "GetObject"
                )
            return {
                "Body": MemoryBody(obj.data),
                "ContentLength": obj.size,
                "ContentType": obj.content_type,
                "ETag": obj.etag,
                "LastModified": obj.last_modified,
            }
        finally:
            self._leave("get_object")

    async def copy_object(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("copy_object", kwargs)
        try:
            source = kwargs["CopySource"]
            if isinstance(source, str):
                bucket, _, source_key = unquote(source).lstrip("/").partition("/")
            else:
                bucket, source_key = source["Bucket"], source["Key"]
            obj = self.objects.get(source_key) if bucket == self.bucket else None
            if obj is None:
                raise client_error(
                    "NoSuchKey", "The specified key does not exist.", 404, "CopyObject"
                )
            copied = StoredObject(
                data=obj.data,
                content_type=obj.content_type,
                etag=obj.etag,
                metadata=dict(obj.metadata),
            )
            self.objects[kwargs["Key"]] = copied
            return {"CopyObjectResult": {"ETag": copied.etag, "LastModified": copied.last_modified}}
        finally:
            self._leave("copy_object")

    async def delete_objects(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("delete_objects", kwargs)
        try:
            objects = kwargs["Delete"]["Objects"]
            if len(objects) > C.DELETE_BATCH_SIZE:
                raise client_error(
                    "MalformedXML",
                    "The XML you provided was not well-formed",
                    400,
                    "DeleteObjects",
                )
            deleted: list[dict[str, str]] = []
            errors: list[dict[str, str]] = []
            for entry in objects:
                key = entry["Key"]
                if key in self._denied_deletes:
                    errors.append({"Key": key, "Code": "AccessDenied", "Message": "Access Denied"})
                    continue
                self.objects.pop(key, None)
                deleted.append({"Key": key})
            response: dict[str, Any] = {}
            if deleted and not kwargs["Delete"].get("Quiet"):
                response["Deleted"] = deleted
            if errors:
                response["Errors"] = errors
            return response
        finally:
            self._leave("delete_objects")

    async def create_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("create_multipart_upload", kwargs)
        try:
            upload_id = uuid4().hex
            self._uploads[upload_id] = _MultipartUpload(
                key=kwargs["Key"],
                content_type=kwargs.get("ContentType", "application/octet-stream"),
            )
            return {"Bucket": self.bucket, "Key": kwargs["Key"], "UploadId": upload_id}
        finally:
            self._leave("create_multipart_upload")

    def _upload(self, upload_id: str, operation: str) -> _MultipartUpload:
        upload = self._uploads.get(upload_id)
        if upload is None:
            raise client_error(
                "NoSuchUpload", "The specified upload does not exist.", 404, operation
            )
        return upload

    async def upload_part(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("upload_part", kwargs)
        try:
            upload = self._upload(kwargs["UploadId"], "UploadPart")
            data = self._to_bytes(kwargs.get("Body"))
            upload.parts[kwargs["PartNumber"]] = data
            return {"ETag": self._etag(data)}
        finally:
            self._leave("upload_part")

    async def complete_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("complete_multipart_upload", kwargs)
        try:
            upload = self._upload(kwargs["UploadId"], "CompleteMultipartUpload")
            parts = kwargs["MultipartUpload"]["Parts"]
            numbers = [p["PartNumber"] for p in parts]
            if numbers != sorted(numbers) or len(set(numbers)) != len(numbers):
                raise client_error(
                    "InvalidPartOrder", "Parts must be in ascending order", 400,
                    "CompleteMultipartUpload",
                )
            for index, number in enumerate(numbers):
                data = upload.parts.get(number)
                if data is None or self._etag(data) != parts[index]["ETag"]:
                    raise client_error(
                        "InvalidPart", f"Part {number} not found", 400,
                        "CompleteMultipartUpload",
                    )
                if index < len(numbers) - 1 and len(data) < self.min_part_size:
                    raise client_error(
                        "EntityTooSmall", "Part smaller than minimum", 400,
                        "CompleteMultipartUpload",
                    )
            data = b"".join(upload.parts[n] for n in numbers)
            etag = f'"{hashlib.md5(data).hexdigest()}-{len(numbers)}"'
            self.objects[upload.key] = StoredObject(
                data=data, content_type=upload.content_type, etag=etag,
            )
            del self._uploads[kwargs["UploadId"]]
            return {"Bucket": self.bucket, "Key": upload.key, "ETag": etag}
        finally:
            self._leave("complete_multipart_upload")

    async def abort_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        await self._enter("abort_multipart_upload", kwargs)
        try:
            self._upload(kwargs["UploadId"], "AbortMultipartUpload")
            del self._uploads[kwargs["UploadId"]]
            return {}
        finally:
            self._leave("abort_multipart_upload")

    async def generate_presigned_url(
        self,
        ClientMethod: str,
        Params: Optional[dict[str, Any]] = None,
        ExpiresIn: int = C.DEFAULT_PRESIGN_EXPIRY,
        HttpMethod: Optional[str] = None,
    ) -> str:
        params = dict(Params or {})
        key = params.get("Key", "")
        return (
            f"https://{params.get('Bucket', self.bucket)}.s3.memory.local/"
            f"{quote(key)}?X-Amz-Expires={ExpiresIn}"
            f"&X-Amz-Signature={uuid4().hex}&x-method={ClientMethod}"
        )


class InMemoryIdentity:
    """STS stand-in answering get_caller_identity."""

    def __init__(
        self,
        account: str = "123456789012",
        user_id: str = "AIDAMEMORYUSER",
        arn: str = "arn:aws:iam::123456789012:user/memory",
    ) -> None:
        self.account = account
        self.user_id = user_id
        self.arn = arn
        self.error: Optional[BaseException] = None

    async def get_caller_identity(self, **kwargs: Any) -> dict[str, Any]:
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return {"UserId": self.user_id, "Account": self.account, "Arn": self.arn}
