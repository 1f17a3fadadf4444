"""Logging setup for btleech.

Everything under the ``btleech`` logger goes to stderr, optionally mirrored to
a rotating file. Records carry a correlation id so that the lines of one
download can be picked out of interleaved output.
"""

from __future__ import annotations

import json
import logging
import logging.config
import sys
import time
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

from btleech.exceptions import BTLeechError

if TYPE_CHECKING:
    from btleech.models import ObservabilityConfig

PACKAGE_LOGGER = "btleech"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__,
) | {"message", "asctime", "correlation_id"}


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def set_correlation_id(corr_id: str | None = None) -> str:
    """Set the correlation id of the current context, generating one if needed."""
    corr_id = corr_id or new_correlation_id()
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str | None:
    return correlation_id.get()


class CorrelationFilter(logging.Filter):
    """Stamp each record with the current correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, ``extra=`` fields included."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": record.created,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        corr_id = getattr(record, "correlation_id", None)
        if corr_id:
            entry["correlation_id"] = corr_id
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                entry[key] = value
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter coloring the level name."""

    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET: ClassVar[str] = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # other handlers share the record
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname)
        if color:
            record.levelname = f"{color}{record.levelname}{self.RESET}"
        corr_id = getattr(record, "correlation_id", None)
        record.correlation_id = f"[{corr_id}]" if corr_id and corr_id != "-" else ""
        return super().format(record)


def _formatters() -> dict[str, dict[str, Any]]:
    return {
        "colored": {
            "()": ColoredFormatter,
            "format": "%(asctime)s %(levelname)s %(correlation_id)s %(name)s: %(message)s",
            "datefmt": "%H:%M:%S",
        },
        "structured": {"()": StructuredFormatter},
        "plain": {
            "format": "%(asctime)s %(levelname)s %(correlation_id)s %(name)s: %(message)s",
        },
    }


def _console_handler(config: ObservabilityConfig) -> dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": config.log_level.value,
        "formatter": "structured" if config.structured_logging else "colored",
        "filters": ["correlation"],
        # stdout is reserved for command output
        "stream": sys.stderr,
    }


def _file_handler(config: ObservabilityConfig) -> dict[str, Any]:
    Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": config.log_level.value,
        "formatter": "structured" if config.structured_logging else "plain",
        "filters": ["correlation"],
        "filename": config.log_file,
        "maxBytes": LOG_FILE_MAX_BYTES,
        "backupCount": LOG_FILE_BACKUPS,
        "encoding": "utf-8",
    }


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure the ``btleech`` logger from the observability settings."""
    handlers = {"console": _console_handler(config)}
    if config.log_file:
        handlers["file"] = _file_handler(config)

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": _formatters(),
            "filters": {"correlation": {"()": CorrelationFilter}},
            "handlers": handlers,
            "loggers": {
                PACKAGE_LOGGER: {
                    "level": config.log_level.value,
                    "handlers": list(handlers),
                    "propagate": False,
                },
            },
        },
    )

    if config.log_correlation_id:
        set_correlation_id()
    else:
        correlation_id.set(None)


def get_logger(name: str) -> logging.Logger:
    """Get a logger namespaced under ``btleech``."""
    if name == PACKAGE_LOGGER or name.startswith(f"{PACKAGE_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class LoggingContext:
    """Log the start, outcome and duration of an operation.

    The operation runs under a correlation id of its own, and the previous id
    is restored on exit. Keyword arguments are attached to every record as
    ``extra`` fields.
    """

    def __init__(self, operation: str, logger: logging.Logger | None = None, **fields: Any):
        self.operation = operation
        self.fields = fields
        self.logger = logger or get_logger("operations")
        self.correlation_id: str | None = None
        self._token = None
        self._started = 0.0

    def __enter__(self) -> LoggingContext:
        self.correlation_id = new_correlation_id()
        self._token = correlation_id.set(self.correlation_id)
        self._started = time.monotonic()
        self.logger.info("Starting %s", self.operation, extra=self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        elapsed = time.monotonic() - self._started
        try:
            if exc_type is None:
                self.logger.info(
                    "Completed %s in %.3fs", self.operation, elapsed, extra=self.fields
                )
            elif issubclass(exc_type, Exception):
                self.logger.error(
                    "Failed %s after %.3fs: %s", self.operation, elapsed, exc_val, extra=self.fields
                )
            else:
                self.logger.info(
                    "Cancelled %s after %.3fs", self.operation, elapsed, extra=self.fields
                )
        finally:
            correlation_id.reset(self._token)
        return False


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    context: str,
    *,
    traceback: bool = True,
) -> None:
    """Log ``exc`` at ERROR, with the ``details`` of a :class:`BTLeechError`."""
    extra = {"details": exc.details} if isinstance(exc, BTLeechError) else {}
    message = exc.message if isinstance(exc, BTLeechError) else str(exc)
    logger.error(
        "%s: %s",
        context,
        message,
        extra=extra,
        exc_info=exc if traceback else None,
    )
