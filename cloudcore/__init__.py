"""
cloudcore: Object Storage Operations Engine

Client-side orchestration for S3-compatible buckets. Turns user
intents (list, upload, download, delete, rename/move folders, share,
bucket statistics) into safe, retried, concurrency-bounded calls
against a store that only knows flat keys and a "/" convention.

- Key Sanitizer: every key validated before any request
- Rate Limiter + Retry Executor: on every remote call
- Engines: listing, upload (multipart, batch), download, batch
  delete, recursive rename/move, statistics
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from cloudcore.core.types import Result, Ok, Err
from cloudcore.core.errors import (
    CloudCoreError,
    ErrorCode,
    PathError,
    StoreError,
    TransferError,
)
from cloudcore.core.config import (
    CloudCoreConfig,
    ObservabilityConfig,
    PresignConfig,
    ReliabilityConfig,
    S3Config,
    TransferConfig,
)
from cloudcore.pipeline import InFlightWindow, ProgressChannel, ProgressEvent
from cloudcore.reliability import OperationCategory, RateLimitPolicy, RetryPolicy
from cloudcore.storage import (
    BatchResult,
    BucketStats,
    BytesSource,
    CallerIdentity,
    ConflictChoice,
    ConflictDecision,
    DownloadResult,
    FileSource,
    InMemoryIdentity,
    InMemoryObjectStore,
    ListPage,
    StorageKey,
    StorageObject,
    TransferState,
    UploadRequest,
)
from cloudcore.client import BucketClient

__all__ = [
    "__version__",
    # Types
    "Result",
    "Ok",
    "Err",
    # Errors
    "CloudCoreError",
    "ErrorCode",
    "PathError",
    "StoreError",
    "TransferError",
    # Config
    "CloudCoreConfig",
    "S3Config",
    "TransferConfig",
    "PresignConfig",
    "ReliabilityConfig",
    "ObservabilityConfig",
    # Pipeline / reliability
    "InFlightWindow",
    "ProgressChannel",
    "ProgressEvent",
    "OperationCategory",
    "RateLimitPolicy",
    "RetryPolicy",
    # Storage
    "BatchResult",
    "BucketStats",
    "BytesSource",
    "CallerIdentity",
    "ConflictChoice",
    "ConflictDecision",
    "DownloadResult",
    "FileSource",
    "InMemoryIdentity",
    "InMemoryObjectStore",
    "ListPage",
    "StorageKey",
    "StorageObject",
    "TransferState",
    "UploadRequest",
    # Client
    "BucketClient",
]
