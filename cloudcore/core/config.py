"""
Configuration Management for the Bucket Operations Engine

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from cloudcore.core import constants as C
from cloudcore.core.errors import CloudCoreError
from cloudcore.core.types import Err, Ok, Result
from cloudcore.observability.logging import LogLevel
from cloudcore.reliability.rate_limiter import (
    DEFAULT_RATE_LIMITS,
    OperationCategory,
    RateLimitPolicy,
)
from cloudcore.reliability.retry import RetryPolicy

_BUCKET_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9]$")
_IPV4_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
_ENV_PREFIX = "CLOUDCORE_"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(_ENV_PREFIX + name)
    return value if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class S3Config:
    """
    S3-compatible bucket connection configuration.

    Supports AWS S3, MinIO, Cloudflare R2, and other S3-compatible stores.

    Attributes:
        bucket_name: Target bucket (required, S3 naming rules).
        region: AWS region.
        endpoint_url: Custom endpoint for MinIO/R2 (None for AWS).
        access_key_id: Access key (None for IAM role / default chain).
        secret_access_key: Secret key (None for IAM role / default chain).
        session_token: Temporary session token for STS.
        max_pool_connections: HTTP connection pool size.
        connect_timeout_seconds: TCP connect timeout.
        read_timeout_seconds: Read operation timeout.
        use_ssl: Use HTTPS for connections.
        verify_ssl: Verify SSL certificates (disable for self-signed).
    """

    bucket_name: str
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None

    max_pool_connections: int = 50
    connect_timeout_seconds: int = 30
    read_timeout_seconds: int = 30

    use_ssl: bool = True
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """
        Validate configuration invariants.

        Raises:
            ValueError: If any invariant is violated.
        """
        if not _BUCKET_NAME_RE.match(self.bucket_name or ""):
            raise ValueError(
                f"bucket_name must be 3-63 lowercase letters, digits, '.' or '-', "
                f"got {self.bucket_name!r}"
            )
        if ".." in self.bucket_name:
            raise ValueError("bucket_name must not contain consecutive periods")
        if _IPV4_RE.match(self.bucket_name):
            raise ValueError("bucket_name must not be formatted as an IP address")
        if (self.access_key_id is None) != (self.secret_access_key is None):
            raise ValueError("access_key_id and secret_access_key must be set together")
        if self.max_pool_connections < 1:
            raise ValueError("max_pool_connections must be >= 1")
        if self.connect_timeout_seconds <= 0 or self.read_timeout_seconds <= 0:
            raise ValueError("timeouts must be > 0")

    @classmethod
    def from_env(cls) -> S3Config:
        """
        Load from CLOUDCORE_S3_* environment variables.

        Raises:
            ValueError: If CLOUDCORE_S3_BUCKET is missing or invalid.
        """
        return cls(
            bucket_name=_env("S3_BUCKET", ""),
            region=_env("S3_REGION", "us-east-1"),
            endpoint_url=_env("S3_ENDPOINT_URL"),
            access_key_id=_env("S3_ACCESS_KEY_ID"),
            secret_access_key=_env("S3_SECRET_ACCESS_KEY"),
            session_token=_env("S3_SESSION_TOKEN"),
            max_pool_connections=int(_env("S3_MAX_POOL_CONNECTIONS", "50")),
            connect_timeout_seconds=int(_env("S3_CONNECT_TIMEOUT", "30")),
            read_timeout_seconds=int(_env("S3_READ_TIMEOUT", "30")),
            use_ssl=_env_bool("S3_USE_SSL", True),
            verify_ssl=_env_bool("S3_VERIFY_SSL", True),
        )

    def __repr__(self) -> str:
        # Keep secrets out of logs
        return (
            f"S3Config(bucket_name={self.bucket_name!r}, region={self.region!r}, "
            f"endpoint_url={self.endpoint_url!r})"
        )


@dataclass(frozen=True)
class TransferConfig:
    """Upload/download sizing and bulk-operation fan-out."""

    large_file_threshold_bytes: int = C.LARGE_FILE_THRESHOLD
    part_size_bytes: int = C.MULTIPART_PART_SIZE
    max_concurrent_parts: int = C.MAX_CONCURRENT_PARTS
    max_concurrent_uploads: int = C.MAX_CONCURRENT_UPLOADS
    max_file_size_bytes: int = C.MAX_FILE_SIZE
    download_stream_threshold_bytes: int = C.DOWNLOAD_STREAM_THRESHOLD
    download_chunk_size_bytes: int = C.DOWNLOAD_CHUNK_SIZE
    progress_min_delta_bytes: int = C.PROGRESS_MIN_DELTA
    max_concurrent_copies: int = C.MAX_CONCURRENT_COPIES
    delete_batch_size: int = C.DELETE_BATCH_SIZE
    list_page_size: int = C.MAX_KEYS_PER_LIST

    def validate(self) -> Result[None, CloudCoreError]:
        if self.part_size_bytes < C.MIN_MULTIPART_PART_SIZE:
            return Err(CloudCoreError.configuration(
                f"part_size_bytes must be >= {C.MIN_MULTIPART_PART_SIZE}"
            ))
        if self.max_file_size_bytes > self.part_size_bytes * C.MAX_MULTIPART_PARTS:
            return Err(CloudCoreError.configuration(
                "max_file_size_bytes needs more than the maximum number of parts"
            ))
        if not 1 <= self.delete_batch_size <= C.DELETE_BATCH_SIZE:
            return Err(CloudCoreError.configuration(
                f"delete_batch_size must be in [1, {C.DELETE_BATCH_SIZE}]"
            ))
        if not 1 <= self.list_page_size <= C.MAX_KEYS_PER_LIST:
            return Err(CloudCoreError.configuration(
                f"list_page_size must be in [1, {C.MAX_KEYS_PER_LIST}]"
            ))
        for name in (
            "max_concurrent_parts", "max_concurrent_uploads",
            "max_concurrent_copies", "download_chunk_size_bytes",
        ):
            if getattr(self, name) < 1:
                return Err(CloudCoreError.configuration(f"{name} must be >= 1"))
        return Ok(None)


@dataclass(frozen=True)
class PresignConfig:
    """Pre-signed URL expiry bounds."""

    default_expiry_seconds: int = C.DEFAULT_PRESIGN_EXPIRY
    min_expiry_seconds: int = C.MIN_PRESIGN_EXPIRY
    max_expiry_seconds: int = C.MAX_PRESIGN_EXPIRY
    share_presets: tuple[int, ...] = C.SHARE_LINK_PRESETS

    def validate(self) -> Result[None, CloudCoreError]:
        if not self.min_expiry_seconds <= self.default_expiry_seconds <= self.max_expiry_seconds:
            return Err(CloudCoreError.configuration(
                "default_expiry_seconds must lie within [min, max]"
            ))
        if self.max_expiry_seconds > C.MAX_PRESIGN_EXPIRY:
            return Err(CloudCoreError.configuration(
                f"max_expiry_seconds cannot exceed {C.MAX_PRESIGN_EXPIRY}"
            ))
        return Ok(None)


@dataclass(frozen=True)
class ReliabilityConfig:
    """Retry and rate-limit policies per operation category."""

    retry: Mapping[OperationCategory, RetryPolicy] = field(
        default_factory=lambda: {c: RetryPolicy() for c in OperationCategory}
    )
    rate_limits: Mapping[OperationCategory, RateLimitPolicy] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )

    def retry_policy(self, category: OperationCategory) -> RetryPolicy:
        return self.retry.get(category) or RetryPolicy.default()


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class CloudCoreConfig:
    """Root configuration for the bucket engine."""

    s3: Optional[S3Config] = None
    transfer: TransferConfig = field(default_factory=TransferConfig)
    presign: PresignConfig = field(default_factory=PresignConfig)
    reliability: ReliabilityConfig = field(default_factory=ReliabilityConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> Result[CloudCoreConfig, CloudCoreError]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with CLOUDCORE_.
        Example: CLOUDCORE_S3_BUCKET, CLOUDCORE_PART_SIZE_BYTES
        """
        try:
            s3 = S3Config.from_env()

            transfer = TransferConfig(
                large_file_threshold_bytes=int(
                    _env("LARGE_FILE_THRESHOLD_BYTES", str(C.LARGE_FILE_THRESHOLD))
                ),
                part_size_bytes=int(_env("PART_SIZE_BYTES", str(C.MULTIPART_PART_SIZE))),
                max_concurrent_uploads=int(
                    _env("MAX_CONCURRENT_UPLOADS", str(C.MAX_CONCURRENT_UPLOADS))
                ),
                max_concurrent_copies=int(
                    _env("MAX_CONCURRENT_COPIES", str(C.MAX_CONCURRENT_COPIES))
                ),
            )

            observability = ObservabilityConfig(
                log_level=_env("LOG_LEVEL", "INFO"),
                log_json=_env_bool("LOG_JSON", True),
            )

            config = cls(s3=s3, transfer=transfer, observability=observability)
        except (ValueError, TypeError) as e:
            return Err(CloudCoreError.configuration(str(e)))

        return config.validate().map(lambda _: config)

    def validate(self) -> Result[None, CloudCoreError]:
        """Validate configuration invariants."""
        for section in (self.transfer, self.presign):
            result = section.validate()
            if result.is_err():
                return result
        try:
            LogLevel.parse(self.observability.log_level)
        except ValueError as e:
            return Err(CloudCoreError.configuration(str(e)))
        return Ok(None)
