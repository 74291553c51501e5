"""Agent logging configuration with JSON formatting.

This module provides structured logging for the agent process and the
per-run log files an operator opens after a failed deployment:
- JSON-formatted output for the service log
- Plain "[HH:MM:SS] message" files, one per deploy/removal run
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from hvlab.config import settings

RUN_LOGGER_PREFIX = "hvlab.run"


class AgentJSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Formats log records as JSON objects with consistent fields:
    - timestamp: ISO8601 formatted timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - service: Always "hvlab" for identification
    - extra: Additional context fields (run_id, lab, ...)
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "hvlab",
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        standard_attrs = {
            "name", "msg", "args", "created", "filename", "funcName",
            "levelname", "levelno", "lineno", "module", "msecs",
            "pathname", "process", "processName", "relativeCreated",
            "stack_info", "exc_info", "exc_text", "thread", "threadName",
            "taskName", "message",
        }

        extra = {}
        for key, value in record.__dict__.items():
            if key not in standard_attrs:
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)

        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry)


class AgentTextFormatter(logging.Formatter):
    """Text log formatter (development use).

    [timestamp] LEVEL logger: message
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        message = f"[{timestamp}] {record.levelname:8} {record.name}: {record.getMessage()}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class RunFileFormatter(logging.Formatter):
    """Formatter for per-run log files: "[HH:MM:SS] message".

    Error lines (stderr of the provisioning script, failures) get an
    "ERROR: " prefix unless the message already carries one.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        message = record.getMessage()
        if record.levelno >= logging.ERROR and not message.lstrip().startswith("ERROR"):
            message = f"ERROR: {message}"
        return f"[{timestamp}] {message}"


def setup_logging() -> None:
    """Configure process logging based on settings.

    Sets up the root logger with either JSON or text formatting
    based on the log_format setting.
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)

    if settings.log_format.lower() == "json":
        handler.setFormatter(AgentJSONFormatter())
    else:
        handler.setFormatter(AgentTextFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def run_log_path(kind: str, log_directory: str | Path | None = None) -> Path:
    """Build the log file path for a run, e.g. deployment-20240131-142501.log."""
    directory = Path(log_directory or settings.log_directory)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return directory / f"{kind}-{stamp}.log"


def open_run_logger(run_id: str, log_file: Path | None) -> logging.Logger:
    """Create the logger that mirrors a run's log lines into its log file.

    The logger is not registered with the logging manager, so it goes away
    with its run. It has no parent, so the file holds exactly what the
    operator saw.
    """
    run_logger = logging.Logger(f"{RUN_LOGGER_PREFIX}.{run_id}", level=logging.INFO)
    # Keeps logging.lastResort from echoing error lines to stderr
    run_logger.addHandler(logging.NullHandler())

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file, encoding="utf-8")
            handler.setFormatter(RunFileFormatter())
            run_logger.addHandler(handler)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Could not open run log file {log_file}: {e}")

    return run_logger


def close_run_logger(run_logger: logging.Logger) -> None:
    """Flush and detach every handler of a run logger."""
    for handler in run_logger.handlers[:]:
        try:
            handler.close()
        finally:
            run_logger.removeHandler(handler)
