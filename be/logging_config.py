"""Centralized logging configuration.

Call setup_logging() once at application startup, before the first request
is served. Output goes to stderr (and optionally a file) as single-line JSON
or plain text depending on LOG_FORMAT.
"""
from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone

from .config import settings


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def build_logging_config() -> dict:
    """Build a dictConfig mapping from the LOG_* settings."""
    level = settings.logging.level.upper()
    formatter = "json" if settings.logging.format == "json" else "standard"

    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": formatter,
            "stream": "ext://sys.stderr",
        },
    }
    if settings.logging.file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": formatter,
            "filename": settings.logging.file,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JSONFormatter,
            },
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            },
        },
        "handlers": handlers,
        "root": {
            "level": level,
            "handlers": list(handlers),
        },
        "loggers": {
            "be": {"level": level},
            "ai": {"level": level},
            "uvicorn": {"level": "WARNING"},
            "uvicorn.access": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
            "sqlalchemy.engine": {"level": "WARNING"},
        },
    }


def setup_logging() -> None:
    """Apply the centralized logging configuration."""
    logging.config.dictConfig(build_logging_config())
