"""Problem+JSON utilities and global exception handlers.

Defines the RFC 7807 media type and handler callables that produce
application/problem+json responses.
"""

from __future__ import annotations

import logging
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from arrangeable.http.error_mapping import ARRANGE_ERROR_MAP
from arrangeable.logic.errors import ArrangeableError

PROBLEM_MEDIA_TYPE = "application/problem+json"

logger = logging.getLogger(__name__)


async def handle_arrangeable_error(request: Request, exc: ArrangeableError) -> JSONResponse:  # noqa: D401
    mapping = ARRANGE_ERROR_MAP.get(exc.code, ARRANGE_ERROR_MAP["ARRANGE_ERROR"])
    problem = {
        "type": "about:blank",
        "title": mapping["title"],
        "status": mapping["status"],
        "detail": str(exc),
        "code": exc.code,
    }
    logger.info("error_handler.handle code=%s path=%s", exc.code, request.url.path)
    return JSONResponse(problem, status_code=int(mapping["status"]), media_type=PROBLEM_MEDIA_TYPE)


async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:  # noqa: D401
    status_code = int(getattr(exc, "status_code", 500) or 500)
    if isinstance(exc.detail, dict):
        detail = exc.detail
    else:
        detail = {"title": "Error", "status": status_code, "detail": str(exc.detail or "")}
    return JSONResponse(
        detail,
        status_code=status_code,
        media_type=PROBLEM_MEDIA_TYPE,
        headers=dict(exc.headers) if exc.headers else None,
    )


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:  # noqa: D401
    problem = {
        "title": "Invalid Request",
        "status": 422,
        "detail": "Request validation failed",
        "errors": [
            {"loc": list(e.get("loc", ())), "msg": str(e.get("msg", "")), "type": str(e.get("type", ""))}
            for e in exc.errors()
        ],
    }
    return JSONResponse(problem, status_code=422, media_type=PROBLEM_MEDIA_TYPE)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:  # noqa: D401
    logger.error("unexpected_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse({"title": "Internal Server Error", "status": 500}, status_code=500, media_type=PROBLEM_MEDIA_TYPE)


__all__ = [
    "PROBLEM_MEDIA_TYPE",
    "handle_arrangeable_error",
    "handle_http_exception",
    "handle_request_validation_error",
    "handle_unexpected_error",
]
