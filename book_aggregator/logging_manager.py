"""Centralized logging configuration for book-aggregator.

Every record is rendered as one JSON object. The values bound with
:func:`log_context` (run id, batch, object key, lookup tier) are copied onto
each record, and records flagged ``console_suppress`` only reach the
rotating log file.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterator, Optional

PROJECT_DIR = Path(__file__).resolve().parent.parent
LOG_DIR_ENV = "BOOK_AGGREGATOR_LOG_DIR"
LOG_FILE_NAME = "book_aggregator.log"
LOGGER_NAME = "book_aggregator"
DEFAULT_LOG_LEVEL = logging.INFO
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 5

_logger: Optional[logging.Logger] = None
_setup_lock = threading.Lock()
_log_context: contextvars.ContextVar[Dict[str, object]] = contextvars.ContextVar(
    "book_aggregator_log_context", default={}
)

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
    "console_suppress",
}


def get_log_dir() -> Path:
    override = os.environ.get(LOG_DIR_ENV)
    return Path(override).expanduser() if override else PROJECT_DIR / "log"


class JSONLogFormatter(logging.Formatter):
    """Render log records as structured JSON strings."""

    # Promoted to the top level; other ``extra`` values are nested under "extra".
    CONTEXT_FIELDS: tuple[str, ...] = (
        "run_id",
        "batch",
        "object_key",
        "event",
        "stage",
        "tier",
        "duration_ms",
        "status",
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "pid": record.process,
            "thread": record.threadName,
        }
        extra: Dict[str, object] = {}
        for key, value in record.__dict__.items():
            if key in self.CONTEXT_FIELDS:
                if value is not None:
                    payload[key] = value
            elif key not in _STANDARD_ATTRIBUTES:
                extra[key] = value
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class LogContextFilter(logging.Filter):
    """Copy the bound context onto records that do not set those keys themselves."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class ConsoleSuppressFilter(logging.Filter):
    """Keep records flagged with ``console_suppress`` out of the console stream."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        return not getattr(record, "console_suppress", False)


def _build_logger(log_dir: Path) -> logging.Logger:
    formatter = JSONLogFormatter()
    context_filter = LogContextFilter()

    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
    )
    # Console output goes to stderr so CLI results on stdout stay machine readable.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.addFilter(ConsoleSuppressFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.propagate = False
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    """Return the package logger, attaching its handlers on first use."""
    global _logger
    if _logger is None:
        with _setup_lock:
            if _logger is None:
                _logger = _build_logger(get_log_dir())
                _apply_level(_logger, DEFAULT_LOG_LEVEL)
    return _logger


def _apply_level(logger: logging.Logger, level: int) -> None:
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)


def configure_logging_level(debug_enabled: bool = False, log_level: Optional[int] = None) -> int:
    """Set the package level from ``--debug`` or an explicit level."""
    if log_level is None:
        log_level = logging.DEBUG if debug_enabled else DEFAULT_LOG_LEVEL
    _apply_level(get_logger(), log_level)
    return log_level


def get_log_context() -> Dict[str, object]:
    return dict(_log_context.get())


@contextlib.contextmanager
def log_context(**values: object) -> Iterator[None]:
    """Bind ``values`` (``None`` skipped) to every record logged inside the block."""

    merged = dict(_log_context.get())
    merged.update({key: value for key, value in values.items() if value is not None})
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


def clear_log_context() -> None:
    _log_context.set({})
