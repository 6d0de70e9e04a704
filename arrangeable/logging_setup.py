"""Logging configuration for the ordering service.

The ``arrangeable`` logger tree gets its own level, taken from the
``level`` argument or the ``ARRANGEABLE_LOG_LEVEL`` environment variable
(default INFO). Turning it up to DEBUG shows lock tokens and per-create
positions without also turning on SQLAlchemy's statement echo, which stays
at WARNING. Uvicorn loggers keep their own console output.
"""
from __future__ import annotations

import logging
import os
from logging.config import dictConfig
from typing import Any, Dict, Optional

_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"


def resolve_level(level: Optional[str] = None) -> str:
    raw = (level or os.getenv("ARRANGEABLE_LOG_LEVEL") or "INFO").strip().upper()
    if raw not in _LEVELS:
        raise ValueError(f"unknown log level {raw!r}; expected one of {', '.join(_LEVELS)}")
    return raw


def build_logging_config(level: Optional[str] = None) -> Dict[str, Any]:
    """Return the dictConfig mapping for the given package log level."""
    package_level = resolve_level(level)
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": _FORMAT}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "DEBUG",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
        "loggers": {
            "arrangeable": {"level": package_level},
            "sqlalchemy.engine": {"level": "WARNING"},
            "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.error": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
        },
    }


def configure_logging(level: Optional[str] = None) -> None:
    """Configure logging once per process.

    Returns early when the root logger already has handlers (reloaders, test
    runners), so repeated app factory calls never duplicate output.
    """
    if logging.getLogger().handlers:
        return
    dictConfig(build_logging_config(level))


__all__ = ["build_logging_config", "configure_logging", "resolve_level"]
