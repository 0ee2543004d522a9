"""
System-Wide Constants for the Bucket Operations Engine

All store limits and transfer defaults centralized here.
Limits marked (S3) are imposed by the S3 API itself.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024
MB: Final[int] = 1024 * KB
GB: Final[int] = 1024 * MB

SECOND_MS: Final[int] = 1000
HOUR_S: Final[int] = 3600
DAY_S: Final[int] = 24 * HOUR_S

# =============================================================================
# KEY LIMITS
# =============================================================================
DELIMITER: Final[str] = "/"
MAX_KEY_BYTES: Final[int] = 1024          # (S3)
MAX_NAME_LENGTH: Final[int] = 255

# Characters S3 documents as "to avoid" that also break browser rendering
RESERVED_KEY_CHARACTERS: Final[frozenset[str]] = frozenset('\\<>"|^`{}')

RESERVED_FOLDER_NAMES: Final[frozenset[str]] = frozenset(
    {"CON", "PRN", "AUX", "NUL", "COM1", "LPT1"}
)

# =============================================================================
# TRANSFER
# =============================================================================
LARGE_FILE_THRESHOLD: Final[int] = 100 * MB
MULTIPART_PART_SIZE: Final[int] = 25 * MB
MIN_MULTIPART_PART_SIZE: Final[int] = 5 * MB  # (S3)
MAX_MULTIPART_PARTS: Final[int] = 10_000      # (S3)
MAX_CONCURRENT_PARTS: Final[int] = 10
MAX_CONCURRENT_UPLOADS: Final[int] = 6
MAX_FILE_SIZE: Final[int] = 5 * GB

DOWNLOAD_STREAM_THRESHOLD: Final[int] = 5 * MB
DOWNLOAD_CHUNK_SIZE: Final[int] = 1 * MB
PROGRESS_MIN_DELTA: Final[int] = 100_000

# =============================================================================
# BULK OPERATIONS
# =============================================================================
MAX_KEYS_PER_LIST: Final[int] = 1000          # (S3)
DELETE_BATCH_SIZE: Final[int] = 1000          # (S3)
MAX_CONCURRENT_COPIES: Final[int] = 50

# =============================================================================
# PRESIGNED URLS
# =============================================================================
DEFAULT_PRESIGN_EXPIRY: Final[int] = HOUR_S
MIN_PRESIGN_EXPIRY: Final[int] = 1
MAX_PRESIGN_EXPIRY: Final[int] = 7 * DAY_S    # (S3, SigV4)
SHARE_LINK_PRESETS: Final[tuple[int, ...]] = (
    HOUR_S,
    3 * HOUR_S,
    6 * HOUR_S,
    12 * HOUR_S,
    DAY_S,
    7 * DAY_S,
)

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_MAX_ATTEMPTS: Final[int] = 3
RETRY_BASE_MS: Final[int] = 200
RETRY_MAX_MS: Final[int] = 10 * SECOND_MS
RETRY_JITTER_FRACTION: Final[float] = 0.2

RETRYABLE_STATUS_CODES: Final[frozenset[int]] = frozenset(
    {408, 429, 500, 502, 503, 504}
)

RETRYABLE_ERROR_CODES: Final[frozenset[str]] = frozenset({
    "NetworkingError",
    "TimeoutError",
    "Throttling",
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "InternalError",
    "SlowDown",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "EPIPE",
})

# =============================================================================
# STATISTICS
# =============================================================================
FILE_CATEGORIES: Final[dict[str, frozenset[str]]] = {
    "images": frozenset({"jpg", "jpeg", "png", "gif", "webp", "svg", "bmp", "ico"}),
    "videos": frozenset({"mp4", "webm", "mov", "avi", "mkv", "m4v"}),
    "audio": frozenset({"mp3", "wav", "ogg", "m4a", "flac", "aac"}),
    "documents": frozenset({
        "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "rtf",
    }),
    "code": frozenset({
        "js", "jsx", "ts", "tsx", "json", "html", "css", "py", "java",
        "c", "cpp", "go", "rs", "md",
    }),
    "archives": frozenset({"zip", "rar", "7z", "tar", "gz", "bz2"}),
}
OTHER_CATEGORY: Final[str] = "other"
