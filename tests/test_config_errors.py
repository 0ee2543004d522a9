"""
Unit Tests: Configuration, Error Mapping and Result Types

Tests:
    - S3Config bucket-name and credential rules
    - Transfer/presign validation and environment loading
    - Store exception -> ErrorCode + readable message
    - Ok/Err behaviour
"""

import asyncio

import pytest
from botocore.exceptions import EndpointConnectionError

from cloudcore.core import constants as C
from cloudcore.core.config import CloudCoreConfig, PresignConfig, S3Config, TransferConfig
from cloudcore.core.errors import CloudCoreError, ErrorCode, StoreError, TransferError
from cloudcore.core.types import Err, Ok
from cloudcore.storage.backends import client_error


class TestS3Config:
    """Tests for bucket connection settings."""

    def test_valid(self):
        """Test ordinary names are accepted."""
        config = S3Config(bucket_name="media-files.eu")

        assert config.region == "us-east-1"
        assert config.use_ssl

    @pytest.mark.parametrize("name", [
        "", "ab", "Media", "-media", "media_files", "a..b", "192.168.1.1", "x" * 64,
    ])
    def test_invalid_bucket_names(self, name):
        """Test S3 naming rules are enforced."""
        with pytest.raises(ValueError):
            S3Config(bucket_name=name)

    def test_keys_set_together(self):
        """Test an access key without its secret is refused."""
        with pytest.raises(ValueError):
            S3Config(bucket_name="media", access_key_id="AKIA")

    def test_repr_hides_secrets(self):
        """Test credentials never appear in the repr."""
        config = S3Config(bucket_name="media", access_key_id="AKIA123", secret_access_key="s3cr3t")

        assert "s3cr3t" not in repr(config)
        assert "AKIA123" not in repr(config)


class TestSectionValidation:
    """Tests for transfer and presign validation."""

    def test_defaults_valid(self):
        """Test the default configuration validates."""
        assert TransferConfig().validate().is_ok()
        assert PresignConfig().validate().is_ok()

    @pytest.mark.parametrize("overrides", [
        {"part_size_bytes": 1024},
        {"list_page_size": 1001},
        {"delete_batch_size": 0},
        {"max_concurrent_parts": 0},
        {"part_size_bytes": 5 * C.MB, "max_file_size_bytes": 5 * C.MB * 10_001},
    ])
    def test_invalid_transfer(self, overrides):
        """Test out-of-range transfer settings are refused."""
        result = TransferConfig(**overrides).validate()

        assert result.error.code is ErrorCode.CONFIGURATION_ERROR

    def test_invalid_presign(self):
        """Test presign bounds."""
        assert PresignConfig(default_expiry_seconds=0).validate().is_err()
        assert PresignConfig(max_expiry_seconds=C.MAX_PRESIGN_EXPIRY + 1).validate().is_err()


class TestFromEnv:
    """Tests for environment loading."""

    def test_loads_variables(self, monkeypatch):
        """Test CLOUDCORE_* variables are applied."""
        monkeypatch.setenv("CLOUDCORE_S3_BUCKET", "media-files")
        monkeypatch.setenv("CLOUDCORE_S3_ENDPOINT_URL", "http://localhost:9000")
        monkeypatch.setenv("CLOUDCORE_S3_USE_SSL", "false")
        monkeypatch.setenv("CLOUDCORE_PART_SIZE_BYTES", str(8 * C.MB))
        monkeypatch.setenv("CLOUDCORE_LOG_LEVEL", "debug")

        config = CloudCoreConfig.from_env().unwrap()

        assert config.s3.bucket_name == "media-files"
        assert config.s3.endpoint_url == "http://localhost:9000"
        assert not config.s3.use_ssl
        assert config.transfer.part_size_bytes == 8 * C.MB
        assert config.observability.log_level == "debug"

    def test_missing_bucket(self, monkeypatch):
        """Test a missing bucket is a configuration error."""
        monkeypatch.delenv("CLOUDCORE_S3_BUCKET", raising=False)

        result = CloudCoreConfig.from_env()

        assert result.error.code is ErrorCode.CONFIGURATION_ERROR

    def test_bad_number(self, monkeypatch):
        """Test unparsable numbers are reported, not raised."""
        monkeypatch.setenv("CLOUDCORE_S3_BUCKET", "media-files")
        monkeypatch.setenv("CLOUDCORE_PART_SIZE_BYTES", "lots")

        assert CloudCoreConfig.from_env().is_err()

    def test_bad_log_level(self, monkeypatch):
        """Test unknown log levels fail validation."""
        monkeypatch.setenv("CLOUDCORE_S3_BUCKET", "media-files")
        monkeypatch.setenv("CLOUDCORE_LOG_LEVEL", "loud")

        assert CloudCoreConfig.from_env().is_err()


class TestErrorMapping:
    """Tests for StoreError.from_exception()."""

    @pytest.mark.parametrize("code,status,expected,message", [
        ("NoSuchKey", 404, ErrorCode.NOT_FOUND, "File not found"),
        ("NoSuchBucket", 404, ErrorCode.NOT_FOUND, "Bucket not found"),
        ("AccessDenied", 403, ErrorCode.ACCESS_DENIED, "Access denied to bucket"),
        ("InvalidAccessKeyId", 403, ErrorCode.ACCESS_DENIED, "Invalid access key"),
        ("SignatureDoesNotMatch", 403, ErrorCode.ACCESS_DENIED, "Invalid secret key"),
        ("SlowDown", 503, ErrorCode.OPERATION_FAILED, "Too many requests - please slow down"),
        ("RequestTimeout", 400, ErrorCode.OPERATION_FAILED, "Request timed out"),
    ])
    def test_store_codes(self, code, status, expected, message):
        """Test store codes map to error codes and readable messages."""
        error = StoreError.from_exception(client_error(code, status=status), "op", "a.txt")

        assert error.code is expected
        assert error.user_message == message
        assert error.store_code == code
        assert error.context["key"] == "a.txt"

    def test_status_only(self):
        """Test the HTTP status decides when the code is unknown."""
        error = StoreError.from_exception(client_error("Weird", status=404), "op")

        assert error.code is ErrorCode.NOT_FOUND

    def test_transient_unretried(self):
        """Test transient failures of unretried calls stay TRANSIENT."""
        exc = client_error("SlowDown", status=503)

        assert StoreError.from_exception(exc, "op", retried=False).code is ErrorCode.TRANSIENT
        assert StoreError.from_exception(exc, "op").context["transient"]

    def test_transport_errors(self):
        """Test connection drops and timeouts get their messages."""
        network = StoreError.from_exception(EndpointConnectionError(endpoint_url="https://s3"), "op")
        timeout = StoreError.from_exception(asyncio.TimeoutError(), "op")

        assert network.user_message == "Network error - check your connection"
        assert timeout.user_message == "Request timed out"

    def test_unknown_error(self):
        """Test an unmapped error keeps the operation in its message."""
        error = StoreError.from_exception(client_error("InternalError", status=500), "upload")

        assert error.code is ErrorCode.OPERATION_FAILED
        assert error.message.startswith("upload failed")

    def test_cause_kept(self):
        """Test the original exception is preserved."""
        exc = client_error("NoSuchKey", status=404)

        assert StoreError.from_exception(exc, "op").cause is exc


class TestErrorTypes:
    """Tests for the error base class."""

    def test_to_dict(self):
        """Test serialization excludes the cause."""
        error = CloudCoreError.invalid_argument("expiry_seconds", 0, "too small")

        data = error.to_dict()

        assert data["code"] == "INVALID_ARGUMENT"
        assert data["context"]["argument"] == "expiry_seconds"
        assert "cause" not in data

    def test_with_context(self):
        """Test extra context keeps the error identity."""
        error = TransferError.cancelled("upload", "a.txt")

        enriched = error.with_context(attempt=2)

        assert enriched.error_id == error.error_id
        assert enriched.context["attempt"] == 2
        assert enriched.context["key"] == "a.txt"

    def test_rename_incomplete(self):
        """Test the composite error reports copies and leftovers."""
        error = TransferError.rename_incomplete(
            "photos/", "pics/", copied=3, reason="copy failed", remaining=["photos/a.jpg"],
        )

        assert error.code is ErrorCode.RENAME_INCOMPLETE
        assert error.context["copied"] == 3
        assert error.context["remaining_count"] == 1

    def test_str_contains_code(self):
        """Test the string form names the code."""
        assert str(CloudCoreError.not_initialized("list")).startswith("[NOT_INITIALIZED]")


class TestResult:
    """Tests for Ok/Err."""

    def test_ok(self):
        """Test Ok accessors."""
        result = Ok(2)

        assert result.is_ok()
        assert result.unwrap() == 2
        assert result.map(lambda v: v * 3).unwrap() == 6

    def test_err(self):
        """Test Err accessors."""
        error = CloudCoreError.not_initialized("list")
        result = Err(error)

        assert result.is_err()
        assert result.unwrap_or(5) == 5
        assert result.map(lambda v: v * 3) is result
        with pytest.raises(RuntimeError):
            result.unwrap()
