"""FastAPI application factory for the ordering service.

Wires logging, the table registry, problem+json exception handlers and the
request-id middleware, then mounts the API router under ``/api/v1``.
Business rules live in ``arrangeable/logic/``.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.engine import Engine

from arrangeable.config import AppConfig, load_config
from arrangeable.db.base import get_engine
from arrangeable.db.migrations_runner import apply_migrations
from arrangeable.http.problem import (
    handle_arrangeable_error,
    handle_http_exception,
    handle_request_validation_error,
    handle_unexpected_error,
)
from arrangeable.http.request_id import RequestIdMiddleware
from arrangeable.logging_setup import configure_logging
from arrangeable.logic.errors import ArrangeableError
from arrangeable.logic.registry import TableRegistry
from arrangeable.routes import api_router

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None, engine: Optional[Engine] = None) -> FastAPI:
    """Build the application for ``config`` (loaded from the environment when omitted)."""
    configure_logging()
    cfg = config or load_config()
    eng = engine or get_engine(cfg.database.dsn)

    if cfg.auto_apply_migrations and cfg.migrations_dir:
        applied = apply_migrations(eng, cfg.migrations_dir)
        logger.info("startup_migrations applied=%s", applied)

    app = FastAPI(title="Arrangeable", version="0.1.0")
    app.state.config = cfg
    app.state.registry = TableRegistry(eng, cfg.tables.values())

    app.add_exception_handler(ArrangeableError, handle_arrangeable_error)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router, prefix="/api/v1")
    logger.info("app_created tables=%s", list(app.state.registry))
    return app


__all__ = ["create_app"]
