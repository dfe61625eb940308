import logging
import json
import os
import sys
from datetime import datetime, timezone

from comms_scheduler.utils.context import get_correlation_id

# Fields callers pass via logger.info("event.name", extra={...}) that end up in JSON output
_EXTRA_FIELDS = (
    "job_id", "job_type", "attempt", "retry_count", "max_retries", "will_retry",
    "next_retry_at", "next_run", "claimed", "processed", "campaign_id", "instance_id",
    "recipient_id", "parent_id", "stop_reason", "sent", "failed", "skipped",
    "deleted_jobs", "deleted_logs", "method", "path", "status", "duration_ms",
    "error", "error_type", "service", "circuit_state",
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter; stamps the active correlation id on every record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        cid = getattr(record, "correlation_id", None) or get_correlation_id()
        if cid:
            entry["correlation_id"] = cid

        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development"""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
            datefmt='%H:%M:%S'
        )


def setup_logger(name: str = "comms_scheduler", level: str = None) -> logging.Logger:
    """
    Configure the package logger.

    JSON to stdout when LOG_FORMAT=json (log drains), plain text otherwise.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if os.getenv("LOG_FORMAT") == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(SimpleFormatter())
    logger.addHandler(handler)

    return logger


logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Child loggers propagate to the package handler."""
    if name:
        return logging.getLogger(f"comms_scheduler.{name}")
    return logger
