"""APIRouter registration for the ordering service."""

from __future__ import annotations

from fastapi import APIRouter

from arrangeable.routes.arrangements import router as arrangements_router
from arrangeable.routes.health import router as health_router

api_router = APIRouter()
api_router.include_router(arrangements_router, tags=["Ordering"])
api_router.include_router(health_router, tags=["Health"])

__all__ = ["api_router"]
