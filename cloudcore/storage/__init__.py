"""
Storage module: key rules, data model and the bucket operation engines.

Engines (all sharing one StoreContext):
- ListingEngine: delimiter listing and recursive scan
- UploadEngine: single-part, multipart and batch uploads
- DownloadEngine: pre-signed and streamed downloads, share links
- DeleteEngine: chunked batch delete
- RenameEngine: copy-then-delete rename/move, folder creation
- StatsEngine: bucket statistics
"""

from cloudcore.storage.keys import (
    ROOT,
    StorageKey,
    sanitize,
    sanitize_path,
    sanitize_prefix,
    validate_key,
    validate_file_name,
    validate_folder_name,
    unique_name,
)
from cloudcore.storage.models import (
    BatchResult,
    BucketStats,
    CallerIdentity,
    CategoryStats,
    DownloadResult,
    FailedKey,
    ListPage,
    ObjectKind,
    ScannedObject,
    StorageObject,
    TransferState,
    TransferTask,
)
from cloudcore.storage.protocols import IdentityClient, ObjectStoreClient
from cloudcore.storage.context import StoreContext
from cloudcore.storage.listing import ListingEngine
from cloudcore.storage.upload import (
    BytesSource,
    ConflictChoice,
    ConflictDecision,
    FileSource,
    UploadBatch,
    UploadEngine,
    UploadRequest,
    UploadTask,
)
from cloudcore.storage.download import DownloadEngine, DownloadTask
from cloudcore.storage.delete import DeleteEngine
from cloudcore.storage.rename import RenameEngine
from cloudcore.storage.stats import StatsEngine, categorize
from cloudcore.storage.backends import InMemoryIdentity, InMemoryObjectStore
from cloudcore.storage.s3_store import S3Connection, validate_credentials

__all__ = [
    # Keys
    "ROOT",
    "StorageKey",
    "sanitize",
    "sanitize_path",
    "sanitize_prefix",
    "validate_key",
    "validate_file_name",
    "validate_folder_name",
    "unique_name",
    # Model
    "BatchResult",
    "BucketStats",
    "CallerIdentity",
    "CategoryStats",
    "DownloadResult",
    "FailedKey",
    "ListPage",
    "ObjectKind",
    "ScannedObject",
    "StorageObject",
    "TransferState",
    "TransferTask",
    # Engines
    "StoreContext",
    "ListingEngine",
    "UploadEngine",
    "UploadBatch",
    "UploadRequest",
    "UploadTask",
    "BytesSource",
    "FileSource",
    "ConflictChoice",
    "ConflictDecision",
    "DownloadEngine",
    "DownloadTask",
    "DeleteEngine",
    "RenameEngine",
    "StatsEngine",
    "categorize",
    # Stores
    "ObjectStoreClient",
    "IdentityClient",
    "InMemoryObjectStore",
    "InMemoryIdentity",
    "S3Connection",
    "validate_credentials",
]
