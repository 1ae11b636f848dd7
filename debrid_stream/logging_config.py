"""
Structured Logging Configuration for Debrid-Stream
Provides JSON logging, log rotation, an activity log buffer, and per-task resolve context.
"""

import json
import logging
import logging.handlers
import sys
import threading
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

# Fields a resolve attaches to every record logged while it runs
CONTEXT_FIELDS = ("provider", "info_hash", "file_index", "job_id", "client_ip", "operation")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_log_context: ContextVar[Dict[str, Any]] = ContextVar("debrid_stream_log_context", default={})


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _record_context(record: logging.LogRecord, fields=CONTEXT_FIELDS) -> Dict[str, Any]:
    context = {}
    for field in fields:
        value = getattr(record, field, None)
        if value is not None:
            context[field] = value
    return context


class LogContext:
    """
    Context manager attaching fields to every record logged inside it.

    Fields live in a ContextVar, so concurrent resolves each keep their own.
    Nested contexts add to the outer fields and restore them on exit.

    Usage:
        with LogContext(info_hash="ab12...", file_index=3):
            logger.info("Resolving torrent")
    """

    def __init__(self, **fields):
        self.fields = fields
        self._token = None

    def __enter__(self):
        self._token = _log_context.set({**_log_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)
        return False


class ContextFilter(logging.Filter):
    """Copy the current LogContext fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message and context."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_record_context(record),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
            log_obj["exception_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None

        return json.dumps(log_obj, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Console formatter with colored levels and a trailing [field=value, ...] context.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    FIELDS = ("provider", "info_hash", "file_index", "job_id")

    def __init__(self, use_colors: bool = True):
        super().__init__(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color:
            message = message.replace(record.levelname, f"{color}{record.levelname}{self.RESET}", 1)

        context = _record_context(record, self.FIELDS)
        if context:
            message += " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"

        return message


class ActivityLogHandler(logging.Handler):
    """
    Ring buffer of recent records served by /api/logs.
    Lets an operator follow recent resolutions without external log aggregation.
    """

    def __init__(self, max_entries: int = 1000, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self._buffer: deque = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": _utc_timestamp(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "info_hash": getattr(record, "info_hash", None),
                "file_index": getattr(record, "file_index", None),
                "job_id": getattr(record, "job_id", None),
                "provider": getattr(record, "provider", None),
            }
            with self._lock:
                self._buffer.append((record.levelno, entry))
        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        limit: int = 100,
        level: Optional[str] = None,
        info_hash: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Most recent entries, oldest first.

        Args:
            limit: Maximum number of entries to return
            level: Minimum level name; unknown names are ignored
            info_hash: Only entries logged while resolving this torrent
        """
        with self._lock:
            entries = list(self._buffer)

        min_level = logging.getLevelName(level.upper()) if level else None
        if isinstance(min_level, int):
            entries = [(levelno, e) for levelno, e in entries if levelno >= min_level]

        if info_hash:
            entries = [(levelno, e) for levelno, e in entries if e["info_hash"] == info_hash]

        return [dict(e) for _, e in entries[-limit:]]


# Component-specific log levels
COMPONENT_LOG_LEVELS = {
    "debrid_stream": "INFO",
    "debrid_stream.server": "INFO",
    "debrid_stream.resolver": "INFO",
    "debrid_stream.availability": "INFO",
    "debrid_stream.realdebrid": "INFO",
    "debrid_stream.storage": "WARNING",
    "debrid_stream.retry": "INFO",
    "aiohttp": "WARNING",
    "aiohttp.client": "WARNING",
    "aiosqlite": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "WARNING",
    "uvicorn.error": "INFO",
    "fastapi": "INFO",
}


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    use_colors: bool = True,
    activity_log_size: int = 1000,
) -> ActivityLogHandler:
    """
    Configure the root logger for the server.

    Args:
        log_level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (enables rotation if set)
        log_format: "text" for human-readable, "json" for structured
        max_file_size_mb: Maximum size of each log file before rotation
        backup_count: Number of rotated log files to keep
        use_colors: Use colored output in console (if terminal supports it)
        activity_log_size: Number of entries in the activity log buffer

    Returns:
        ActivityLogHandler for API access to recent logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_output = log_format == "json"
    handlers: List[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if json_output else ColoredFormatter(use_colors=use_colors))
    handlers.append(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT, DATE_FORMAT))
        handlers.append(file_handler)

    activity_handler = ActivityLogHandler(max_entries=activity_log_size)
    handlers.append(activity_handler)

    context_filter = ContextFilter()
    for handler in handlers:
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    for logger_name, level in COMPONENT_LOG_LEVELS.items():
        logging.getLogger(logger_name).setLevel(getattr(logging, level))

    logging.getLogger(__name__).info(
        f"Logging configured: level={log_level}, format={log_format}, "
        f"file={log_file or 'none'}"
    )

    return activity_handler
