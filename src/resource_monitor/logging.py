"""
Structured logging for the resource monitor.

Every module logs through `get_logger(__name__)`; `setup_logging()` attaches a
single stdout handler to the package logger and to uvicorn's loggers, so HTTP
server and access records share one format. Records are emitted as JSON
objects by default, with any `extra` fields merged into the object.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from resource_monitor.config import LoggingConfig

# Root logger name for the package
ROOT_LOGGER_NAME = "resource_monitor"

# Loggers of the embedded HTTP server (uvicorn.error and uvicorn.access
# propagate to "uvicorn")
SERVER_LOGGER_NAMES = ("uvicorn",)

# Plain-text format used when JSON output is disabled
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
        # uvicorn duplicates its message with ANSI colors here
        "color_message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    Render each record as one JSON object per line.

    Base fields are `timestamp` (when the record was created, UTC, millisecond
    precision), `level`, `logger` and `message`, plus `exception` and `stack`
    when present. `extra` fields follow in sorted order; they never replace a
    base field and None values are left out.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        log_entry: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_entry["stack"] = self.formatStack(record.stack_info)

        for key in sorted(record.__dict__.keys() - _RESERVED_ATTRS):
            value = record.__dict__[key]
            if value is not None:
                log_entry.setdefault(key, value)

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
) -> logging.Logger:
    """
    Configure the logging system for the resource monitor.

    Args:
        config: Optional LoggingConfig object with logging settings.
            If provided, overrides the keyword parameters.
        level: Default log level if no config is provided.
        json_format: Whether to use JSON formatting (default: True).
        log_to_stdout: Whether to log to stdout (default: True).

    Returns:
        The package logger.

    Example:
        >>> from resource_monitor.logging import setup_logging
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Service started", extra={"port": 8080})
    """
    if config is not None:
        log_level = config.level.upper()
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    else:
        log_level = level.upper()

    level_no = getattr(logging, log_level, logging.INFO)

    handlers: list[logging.Handler] = []
    if log_to_stdout:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level_no)

        if json_format:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

        handlers.append(handler)

    # uvicorn runs with log_config=None, so its loggers share our handler
    for name in (ROOT_LOGGER_NAME, *SERVER_LOGGER_NAMES):
        target = logging.getLogger(name)
        target.setLevel(level_no)
        # Remove existing handlers to avoid duplicates
        target.handlers.clear()
        for h in handlers:
            target.addHandler(h)
        target.propagate = False

    return logging.getLogger(ROOT_LOGGER_NAME)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "resource_monitor." prefix is added automatically if not present.

    Returns:
        A child logger of the package logger.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
