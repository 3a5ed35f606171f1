"""Logging setup for Nexaflow: console/file handlers, JSON output and per-thread context.

Agent runs and workflow nodes execute on worker threads, so the context
(request id, execution id, node id, workspace id) is kept per thread and
merged into every record that passes through the service's handlers.
"""

import json
import logging
import sys
import threading
import traceback
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context)s"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "anthropic": logging.WARNING,
    "urllib3": logging.WARNING,
}


class ExecutionContextFilter(logging.Filter):
    """Copies the calling thread's context onto each record as ``record.context_fields``.

    Also renders it into ``record.context`` (`` [k=v ...]``) for plain-text formats.
    """

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    def _fields(self) -> Dict[str, Any]:
        if not hasattr(self._local, "fields"):
            self._local.fields = {}
        return self._local.fields

    def set_context(self, **kwargs):
        self._fields().update({k: v for k, v in kwargs.items() if v is not None})

    def clear_context(self):
        self._fields().clear()

    def filter(self, record: logging.LogRecord) -> bool:
        fields = dict(self._fields())
        fields.update(getattr(record, "extra_fields", None) or {})
        record.context_fields = fields
        record.context = (" [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]") if fields else ""
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with the thread's context merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "context_fields", None) or {})

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


_context_filter = ExecutionContextFilter()


def _attach(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the service. Replaces existing root handlers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: ``logging.Formatter`` format for plain-text output;
            ``%(context)s`` expands to the thread's context fields
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The service logger (``nexaflow``)
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        fmt = log_format or DEFAULT_FORMAT
        if "%(context)s" not in fmt:
            fmt += "%(context)s"
        formatter = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(_attach(logging.StreamHandler(sys.stdout), formatter))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_attach(
            RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count),
            formatter,
        ))

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, numeric_level))

    service_logger = logging.getLogger("nexaflow")
    service_logger.setLevel(numeric_level)
    return service_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Add fields to the current thread's context; None values are ignored."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    _context_filter.clear_context()


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log ``message`` with one-off context fields."""
    logger.log(level, message, extra={"extra_fields": context})


class RetryLogger:
    """Logs the attempts of a retried storage operation."""

    def __init__(self, operation: str):
        self.operation = operation
        self.logger = get_logger(f"nexaflow.retry.{operation}")

    def attempt_failed(self, error: Exception, attempt: int, max_attempts: int, delay: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"{self.operation} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s: {error}",
            operation=self.operation,
            error_type=type(error).__name__,
            attempt=attempt,
        )

    def recovered(self, attempts: int):
        log_with_context(
            self.logger, logging.INFO,
            f"{self.operation} succeeded after {attempts} attempts",
            operation=self.operation,
            attempts=attempts,
        )

    def gave_up(self, error: Exception, attempts: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"{self.operation} failed after {attempts} attempts: {error}",
            operation=self.operation,
            error_type=type(error).__name__,
            attempts=attempts,
        )
