"""Liveness endpoint with a database probe."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text as sql_text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def health(request: Request) -> dict:
    engine = request.app.state.registry.engine
    try:
        with engine.connect() as conn:
            conn.execute(sql_text("SELECT 1")).fetchone()
    except SQLAlchemyError as e:
        logger.error("Health DB check failed", exc_info=True)
        return {"status": "degraded", "db": False, "reason": str(e)}
    return {"status": "ok", "db": True, "tables": list(request.app.state.registry)}
