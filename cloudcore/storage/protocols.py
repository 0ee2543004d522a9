"""
Store Client Protocols: The Remote Surface the Engines Consume

Structural subtyping protocols (PEP 544) matching the aioboto3 S3 and
STS client methods the engines call. Both the real aioboto3 clients
and InMemoryObjectStore satisfy them, so every engine is written
against one interface.

Design Principles:
    - Keyword arguments and response dicts follow the S3 API shapes
    - Failures are botocore exceptions; engines map them to CloudCoreError
    - Only the calls actually issued are declared
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class StreamingBody(Protocol):
    """Body of a get_object response."""

    async def read(self, amt: Optional[int] = None) -> bytes:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class ObjectStoreClient(Protocol):
    """
    S3 client subset.

    Every coroutine takes the S3 request parameters as keyword
    arguments (Bucket=, Key=, ...) and returns the S3 response dict.
    """

    async def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def put_object(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def get_object(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def copy_object(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def delete_objects(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def create_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def upload_part(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def complete_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def abort_multipart_upload(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def head_bucket(self, **kwargs: Any) -> dict[str, Any]:
        ...

    async def generate_presigned_url(
        self,
        ClientMethod: str,
        Params: Optional[dict[str, Any]] = None,
        ExpiresIn: int = 3600,
        HttpMethod: Optional[str] = None,
    ) -> str:
        ...


@runtime_checkable
class IdentityClient(Protocol):
    """STS client subset."""

    async def get_caller_identity(self, **kwargs: Any) -> dict[str, Any]:
        ...
