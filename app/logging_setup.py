"""Central logging configuration for the application.

Applies a root stdout handler so all module loggers emit INFO-level logs
without requiring per-module setup. Keeps uvicorn loggers visible and avoids
duplicate handlers on reloads. A filter on the console handler masks CSRF
token values that reach a log line.
"""
from __future__ import annotations
import logging
import os
import re
from logging.config import dictConfig

_TOKEN_RE = re.compile(r"(csrf_token['\"]?\s*[=:]\s*['\"]?)[A-Za-z0-9_\-]+", re.IGNORECASE)


class RedactTokensFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        masked = _TOKEN_RE.sub(r"\1[REDACTED]", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def _dict_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s:%(name)s:%(message)s",
            }
        },
        "filters": {
            "redact_tokens": {"()": RedactTokensFilter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "filters": ["redact_tokens"],
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.error": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
        },
    }


def configure_logging() -> None:
    """Configure application-wide logging once.

    If the root logger already has handlers, return to prevent duplicate output
    (important under reloaders/watchers). `LOG_LEVEL` overrides INFO.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        level = "INFO"
    dictConfig(_dict_config(level))


__all__ = ["RedactTokensFilter", "configure_logging"]
