"""
Core module: Types, errors, constants and configuration.
"""

from cloudcore.core.types import Err, Ok, Result
from cloudcore.core.errors import (
    CloudCoreError,
    ErrorCode,
    PathError,
    StoreError,
    TransferError,
)

__all__ = [
    "Ok",
    "Err",
    "Result",
    "CloudCoreError",
    "ErrorCode",
    "PathError",
    "StoreError",
    "TransferError",
]
