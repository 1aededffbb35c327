"""
Structured Logging: JSON Lines with Mesh Correlation Fields

Every record carries the fields bound by the enclosing log context
(a migration id and its source account, for example) plus the record's
own ``extra=`` fields. Credential material never reaches the output.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional, TextIO


class LogLevel(IntEnum):
    """Log level enumeration."""
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def parse(cls, value: str) -> LogLevel:
        """Parse a level name; unknown names fall back to INFO."""
        try:
            return cls[value.strip().upper()]
        except KeyError:
            return cls.INFO


_log_context: ContextVar[dict[str, Any]] = ContextVar("marketmesh_log_context", default={})

# Attributes of logging.LogRecord that are not user fields
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Emitted first, in this order, when present
_CORRELATION_KEYS = ("migration_id", "source_id", "target_id", "partition", "conversation_id")

_REDACTED_KEYS = frozenset({"credential_hash", "password", "dsn", "redis_url"})


class JsonFormatter(logging.Formatter):
    """One JSON object per line, correlation fields first."""

    def format(self, record: logging.LogRecord) -> str:
        fields = dict(_log_context.get())
        fields.update(
            (key, value) for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        )

        data: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CORRELATION_KEYS:
            if key in fields:
                data[key] = fields.pop(key)
        for key, value in fields.items():
            data[key] = "***" if key in _REDACTED_KEYS else value

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class StructuredLogger:
    """
    Keyword-argument logger over the standard library.

    Usage:
        slog = StructuredLogger("marketmesh.migration")

        with slog.context(migration_id="m-1", source_id="c1"):
            slog.info("Migration step committed", state="references_rewritten")
    """

    __slots__ = ("_logger",)

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    def info(self, message: str, **fields: Any) -> None:
        self._logger.info(message, extra=fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._logger.warning(message, extra=fields)

    def error(self, message: str, **fields: Any) -> None:
        self._logger.error(message, extra=fields)

    @staticmethod
    def context(**fields: Any) -> _LogContext:
        """Bind fields to every record logged inside the block."""
        return _LogContext(fields)


class _LogContext:
    __slots__ = ("_fields", "_token")

    def __init__(self, fields: dict[str, Any]) -> None:
        self._fields = fields
        self._token = None

    def __enter__(self) -> _LogContext:
        self._token = _log_context.set({**_log_context.get(), **self._fields})
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure the root logger for the mesh process.

    Args:
        level: Minimum log level
        json_output: JSON lines when true, a human-readable line otherwise
        stream: Output stream (default: stderr)
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level.value)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
        ))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.value)
    root.addHandler(handler)

    # Driver chatter
    for noisy in ("asyncio", "asyncpg", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
