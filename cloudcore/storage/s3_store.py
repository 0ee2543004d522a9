"""
S3-Compatible Remote Store Connection
=====================================

Owns the aioboto3 session and the two clients the engines need: S3
for bucket operations and STS for the identity half of credential
validation. Works against AWS S3 and any S3-compatible endpoint
(MinIO, Cloudflare R2, ...).

Design Principles:
------------------
1. **One session per connection**: credentials never live in module state
2. **No SDK retries**: botocore is set to a single attempt; the retry
   executor owns backoff so every retry is visible and counted
3. **Idempotent close**: safe to call any number of times
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

import aioboto3
from botocore.config import Config

from cloudcore.core.config import S3Config
from cloudcore.core.errors import CloudCoreError, StoreError
from cloudcore.core.types import Err, Ok, Result
from cloudcore.reliability.rate_limiter import OperationCategory
from cloudcore.storage.context import StoreContext
from cloudcore.storage.models import CallerIdentity
from cloudcore.storage.protocols import IdentityClient

if TYPE_CHECKING:
    from types_aiobotocore_s3 import S3Client

logger = logging.getLogger(__name__)


class S3Connection:
    """
    aioboto3 clients for one bucket configuration.

    Example:
        >>> conn = S3Connection(S3Config(bucket_name="my-bucket"))
        >>> s3, sts = await conn.open()
        >>> ...
        >>> await conn.close()
    """

    __slots__ = ("_config", "_session", "_s3_cm", "_sts_cm", "s3", "sts")

    def __init__(self, config: S3Config) -> None:
        self._config = config
        self._session: Optional[aioboto3.Session] = None
        self._s3_cm: Any = None
        self._sts_cm: Any = None
        self.s3: Optional[S3Client] = None
        self.sts: Any = None

    @property
    def is_open(self) -> bool:
        return self.s3 is not None

    def _client_kwargs(self) -> dict[str, Any]:
        config = self._config
        kwargs: dict[str, Any] = {
            "region_name": config.region,
            "use_ssl": config.use_ssl,
            "config": Config(
                max_pool_connections=config.max_pool_connections,
                connect_timeout=config.connect_timeout_seconds,
                read_timeout=config.read_timeout_seconds,
                retries={"max_attempts": 1, "mode": "standard"},
                signature_version="s3v4",
            ),
        }
        if config.endpoint_url:
            kwargs["endpoint_url"] = config.endpoint_url
        if not config.verify_ssl:
            kwargs["verify"] = False
        return kwargs

    async def open(self) -> tuple[S3Client, Any]:
        """
        Create the session and enter both clients.

        No request is sent; use validate_credentials() to check the
        configuration against the store.
        """
        if self.s3 is not None:
            return self.s3, self.sts

        config = self._config
        session_kwargs: dict[str, Any] = {}
        if config.access_key_id and config.secret_access_key:
            session_kwargs["aws_access_key_id"] = config.access_key_id
            session_kwargs["aws_secret_access_key"] = config.secret_access_key
        if config.session_token:
            session_kwargs["aws_session_token"] = config.session_token
        self._session = aioboto3.Session(**session_kwargs)

        kwargs = self._client_kwargs()
        self._s3_cm = self._session.client("s3", **kwargs)
        self.s3 = await self._s3_cm.__aenter__()

        # STS has no custom endpoint on S3-compatible services
        sts_kwargs = {k: v for k, v in kwargs.items() if k != "endpoint_url"}
        try:
            self._sts_cm = self._session.client("sts", **sts_kwargs)
            self.sts = await self._sts_cm.__aenter__()
        except BaseException:
            await self.close()
            raise

        logger.info(
            f"Opened S3 connection to {config.bucket_name} "
            f"({config.endpoint_url or config.region})"
        )
        return self.s3, self.sts

    async def close(self) -> None:
        """Exit both clients. Safe to call multiple times."""
        s3_cm, sts_cm = self._s3_cm, self._sts_cm
        self._s3_cm = self._sts_cm = None
        self.s3 = self.sts = None
        self._session = None

        if sts_cm is not None:
            await sts_cm.__aexit__(None, None, None)
        if s3_cm is not None:
            await s3_cm.__aexit__(None, None, None)
            logger.debug(f"Closed S3 connection to {self._config.bucket_name}")


async def validate_credentials(
    ctx: StoreContext,
    identity: Optional[IdentityClient],
) -> Result[CallerIdentity, CloudCoreError]:
    """
    Check that the bucket is reachable with the configured keys.

    head_bucket proves bucket access; get_caller_identity names the
    principal. Store errors come back with the user-facing messages
    ("Bucket not found", "Invalid access key", ...).
    """
    try:
        await ctx.call(
            OperationCategory.STAT,
            "head_bucket",
            lambda s3: s3.head_bucket(Bucket=ctx.bucket),
        )
    except CloudCoreError as e:
        return Err(e)
    except Exception as e:
        error = StoreError.from_exception(e, "head_bucket")
        # HEAD responses carry no error body, only the status
        if error.store_code == "404":
            error.message = "Bucket not found"
        elif error.store_code == "403":
            error.message = "Access denied to bucket"
        return Err(error)

    if identity is None:
        return Err(CloudCoreError.not_initialized("get_caller_identity"))

    try:
        response = await ctx.run(
            OperationCategory.STAT,
            "get_caller_identity",
            identity.get_caller_identity,
        )
    except Exception as e:
        return Err(StoreError.from_exception(e, "get_caller_identity"))

    caller = CallerIdentity(
        user_id=response.get("UserId", ""),
        account=response.get("Account", ""),
        arn=response.get("Arn", ""),
    )
    logger.info(f"Credentials valid for {ctx.bucket} as {caller.arn or caller.user_id}")
    return Ok(caller)
