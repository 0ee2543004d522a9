"""
Structured Logging: Operation Context on Every Record

Engine modules log through ``logging.getLogger(__name__)`` as usual.
What this module adds:

- log_context(): operation-scoped fields (operation, bucket, key...)
  kept in a ContextVar, so concurrent tasks never see each other's
  fields
- JsonFormatter: one JSON object per record, context and ``extra``
  fields merged in
- ContextFormatter: the human-readable variant used by the demo
- setup_logging(): wires either formatter onto the root logger
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, Optional, TextIO


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, name: str) -> LogLevel:
        """Case-insensitive lookup, e.g. from CLOUDCORE_LOG_LEVEL."""
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown log level: {name!r}") from None


_context: ContextVar[dict[str, Any]] = ContextVar("cloudcore_log_context", default={})

# Attributes every LogRecord has; anything else came in through extra=
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    Attach fields to every record logged inside the block.

    Nested blocks extend the outer fields and restore them on exit.
    """
    merged = {**_context.get(), **fields}
    token = _context.set(merged)
    try:
        yield merged
    finally:
        _context.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_context.get())


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = current_context()
    fields.update(
        (k, v) for k, v in vars(record).items() if k not in _STANDARD_ATTRS
    )
    return fields


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text with the context fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _record_fields(record)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Minimum log level
        json_output: JsonFormatter when true, ContextFormatter otherwise
        stream: Output stream (default: stderr)
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if json_output else ContextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # botocore logs every request at DEBUG
    for noisy in ("botocore", "aiobotocore", "aioboto3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
