import logging
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler


# Extra fields copied into the JSON entry when passed via extra={...}
_EXTRA_FIELDS = (
    "method", "path", "status", "duration_ms", "client_ip",
    "error", "error_type", "service", "circuit_state",
    "job_id", "conversation_id", "connection_id", "attempt", "priority",
    "position", "state", "event_type", "connections", "delivered", "failed",
    "delay_seconds", "code", "retriable", "tokens", "cost", "latency_ms",
    "worker_slots", "deleted", "recovered", "model", "technique", "archived",
    "channel", "count", "slot",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with correlation ID injection"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Set by the correlation middleware
        if getattr(record, "correlation_id", None):
            entry["correlation_id"] = record.correlation_id
        if getattr(record, "user_id", None):
            entry["user_id"] = record.user_id

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


def _use_json() -> bool:
    return bool(os.getenv("RAILWAY_ENVIRONMENT")) or os.getenv("LOG_FORMAT") == "json"


def setup_logger(name: str = "thinkspace", level: str = "INFO") -> logging.Logger:
    """
    Setup application logger.

    JSON to stdout in hosted environments (or LOG_FORMAT=json), readable lines
    otherwise. LOG_FILE adds a rotating JSON file handler.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", level).upper(), logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter() if _use_json() else SimpleFormatter())
    logger.addHandler(console_handler)

    log_file = os.getenv("LOG_FILE")
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            # Read-only filesystem on some hosts
            logger.warning(f"Could not setup file logging: {e}")

    return logger


# Root application logger; module loggers below it inherit its handlers
logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger under the application namespace."""
    if not name:
        return logger
    if name == "thinkspace" or name.startswith("thinkspace."):
        return logging.getLogger(name)
    return logging.getLogger(f"thinkspace.{name}")
