"""
Centralized logging configuration for the fight odds services.

Console output is JSON in production and colored text in development. Every
record also lands in a rotating per-service JSON file, and identity-pool and
fetcher activity is mirrored into identity.log so session blocking can be
audited on its own.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# Log directory - mounted as volume in Docker
LOG_DIR = Path(os.getenv("LOG_DIR", "/var/log/fight-odds"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # "json" or "text"
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "true").lower() == "true"
MAX_LOG_SIZE = int(os.getenv("MAX_LOG_SIZE_MB", "50")) * 1024 * 1024
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))

# Attributes copied from `extra={...}` into the JSON payload
EXTRA_FIELDS = (
    "event_type",
    "source_id",
    "session_id",
    "fight_id",
    "sportsbook",
    "duration_ms",
    "status_code",
    "url",
    "error_type",
)

# Services that run identity pools
IDENTITY_LOG_SERVICES = ("odds_ingest",)

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


class ServiceFilter(logging.Filter):
    """Stamps the owning service name on every record."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service_name
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({name: getattr(record, name) for name in EXTRA_FIELDS if hasattr(record, name)})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # Color a copy so the file handlers still see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{self.COLORS.get(record.levelname, self.RESET)}{record.levelname}{self.RESET}"
        return super().format(colored)


def is_identity_record(record: logging.LogRecord) -> bool:
    return "identity_pool" in record.name or "fetcher" in record.name


def _rotating_handler(
    path: Path,
    record_filter: Optional[Callable[[logging.LogRecord], bool]] = None,
) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_SIZE, backupCount=LOG_BACKUP_COUNT)
    handler.setLevel(logging.DEBUG)  # files always get everything
    handler.setFormatter(JSONFormatter())
    if record_filter is not None:
        handler.addFilter(record_filter)
    return handler


def setup_logging(service_name: str, log_to_file: Optional[bool] = None) -> logging.Logger:
    """
    Configure the root logger for a service.

    Args:
        service_name: Name of the service (e.g., "odds_ingest")
        log_to_file: Override LOG_TO_FILE

    Returns:
        The service's logger
    """
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if LOG_FORMAT == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    if log_to_file is None:
        log_to_file = LOG_TO_FILE

    handlers = [console_handler]
    if log_to_file:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handlers.append(_rotating_handler(LOG_DIR / f"{service_name}.log"))
        if service_name in IDENTITY_LOG_SERVICES:
            handlers.append(_rotating_handler(LOG_DIR / "identity.log", is_identity_record))

    service_filter = ServiceFilter(service_name)
    for handler in handlers:
        handler.addFilter(service_filter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(service_name)
    logger.info("Logging initialized", extra={
        "event_type": "logging_init",
        "log_level": LOG_LEVEL,
        "log_format": LOG_FORMAT,
        "log_dir": str(LOG_DIR) if handlers[1:] else None,
    })
    return logger
