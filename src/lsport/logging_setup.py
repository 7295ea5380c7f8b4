"""Logging configuration for lsport.

Environment variables:
- LSPORT_LOG_FORMAT: "json" or "text" (default: text)
- LSPORT_LOG_FILE: Optional log file path
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any

LOGGER_NAME = "lsport"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        dt = datetime.fromtimestamp(record.created)
        log_entry: dict[str, Any] = {
            "timestamp": dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def is_json_logging_enabled() -> bool:
    return os.getenv("LSPORT_LOG_FORMAT", "text").lower() == "json"


def setup_logging(verbose: bool = False, log_file: str | None = None, console: bool = True) -> logging.Logger:
    """
    Configure the ``lsport`` logger.

    Args:
        verbose: Log at DEBUG instead of WARNING.
        log_file: Write logs to this file (uses LSPORT_LOG_FILE if None).
        console: Log to stderr when no file is given. The TUI passes False
            because it owns the terminal.

    Returns:
        The configured ``lsport`` logger.
    """
    if log_file is None:
        log_file = os.getenv("LSPORT_LOG_FILE") or None

    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler: logging.Handler
    if log_file:
        try:
            handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            print(f"Warning: Could not open log file {log_file}: {e}", file=sys.stderr)
            handler = logging.StreamHandler(sys.stderr) if console else logging.NullHandler()
    elif console:
        handler = logging.StreamHandler(sys.stderr)
    else:
        handler = logging.NullHandler()

    handler.setFormatter(JSONFormatter() if is_json_logging_enabled() else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False

    # paramiko logs every transport event at INFO/DEBUG
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    return logger
