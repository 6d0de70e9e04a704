"""SQLAlchemy engine helpers.

Targets PostgreSQL in production and SQLite for local development and CI.
No declarative models are defined here; tables are addressed by name through
the store adapter, so this module only manages connection lifecycle.
"""

from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _db_url() -> str:
    return (
        os.getenv("TEST_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or "sqlite+pysqlite:///:memory:"
    )


# Module-level cached Engine shared by every OrderMaintenance instance
_ENGINE: Engine | None = None
_ENGINE_URL: str | None = None


def build_engine(url: str) -> Engine:
    """Create an Engine for ``url`` without touching the module cache."""
    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite") and ":memory:" in url:
        # Keep a single in-memory DB connection shared across the process
        kwargs.update({
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        })
    return create_engine(url, **kwargs)


def get_engine(url: str | None = None) -> Engine:
    """Return a singleton SQLAlchemy Engine for the given URL.

    For SQLite in-memory URLs a StaticPool keeps one connection alive so
    every caller sees the same database.
    """
    global _ENGINE, _ENGINE_URL
    resolved_url = url or _db_url()

    if _ENGINE is None or _ENGINE_URL != resolved_url:
        _ENGINE = build_engine(resolved_url)
        _ENGINE_URL = resolved_url
        logger.info("engine_created dialect=%s", _ENGINE.dialect.name)

    return _ENGINE
