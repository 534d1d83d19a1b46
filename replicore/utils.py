"""
Logging setup and console output shared by the CLI and services.

File output is JSON lines by default so run events (record.start,
record.complete, ...) can be grepped by correlation key.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

LOGGER_NAME = "replicore"

# LogRecord attributes copied into structured output when present
STRUCTURED_FIELDS = ("correlation_key", "task_key", "record_id", "detail_id", "remote_cluster", "event")

PLAIN_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _file_handler(log_file: Path, log_format: str) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    if log_format == "structured":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FILE_FORMAT))
    return handler


def _console_handler(log_format: str) -> logging.Handler:
    if log_format == "pretty":
        return RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
    handler = logging.StreamHandler()
    handler.setFormatter(TaskKeyFormatter())
    return handler


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the "replicore" logger and return it.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        log_file: Path to log file (None disables file logging)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to stderr
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = False

    if log_file is not None:
        logger.addHandler(_file_handler(log_file, log_format))
    if console_output:
        logger.addHandler(_console_handler(log_format))
    return logger


class TaskKeyFormatter(logging.Formatter):
    """One-line console format, prefixed with the task key when the record has one."""

    def format(self, record: logging.LogRecord) -> str:
        task_key = getattr(record, "task_key", None)
        prefix = f"{record.levelname}: [{task_key}] " if task_key else f"{record.levelname}: "
        text = prefix + record.getMessage()
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({name: getattr(record, name) for name in STRUCTURED_FIELDS if hasattr(record, name)})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)
