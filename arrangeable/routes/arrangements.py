"""Ordering routes for configured tables.

Thin handlers over ``OrderMaintenance``: they translate payloads, leave the
ordering rules to the core, and let usage errors surface through the
problem+json handlers registered in ``arrangeable.main``. Handlers are sync
so blocking database work runs in FastAPI's threadpool.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Query, Request

from arrangeable.logic.order_maintenance import MISSING, OrderMaintenance
from arrangeable.logic.registry import TableRegistry
from arrangeable.models.arrangement import (
    FixOrderRequest,
    MoveRequest,
    OrderedIdsResponse,
    PositionsResponse,
    SetOrderRequest,
)

# The parent application mounts this router under '/api/v1'.
router = APIRouter(prefix="/tables")
logger = logging.getLogger(__name__)


def _core(request: Request, table: str) -> OrderMaintenance:
    registry: TableRegistry = request.app.state.registry
    return registry.get(table)


@router.get("/{table}/order", response_model=OrderedIdsResponse)
def get_order(
    request: Request,
    table: str,
    group_key: Optional[str] = Query(default=None),
    direction: Literal["asc", "desc"] = Query(default="asc"),
) -> OrderedIdsResponse:
    """List a group's primary keys by position.

    ``group_key`` is bound as received; databases with numeric affinity
    (SQLite) compare it against integer group columns directly.
    """
    core = _core(request, table)
    key = group_key if "group_key" in request.query_params else MISSING
    ids = core.ordered(key, direction=direction)
    return OrderedIdsResponse(table=table, ids=ids)


@router.put("/{table}/order", response_model=PositionsResponse)
def put_order(request: Request, table: str, body: SetOrderRequest) -> PositionsResponse:
    core = _core(request, table)
    key = body.group_key if "group_key" in body.model_fields_set else MISSING
    positions = core.set_order(body.ids, key)
    return PositionsResponse.from_mapping(table, positions)


@router.post("/{table}/move", response_model=PositionsResponse)
def post_move(request: Request, table: str, body: MoveRequest) -> PositionsResponse:
    core = _core(request, table)
    key = body.target_group_key if "target_group_key" in body.model_fields_set else MISSING
    positions = core.move_to_group(body.ids, key)
    return PositionsResponse.from_mapping(table, positions)


@router.post("/{table}/fix-order", response_model=PositionsResponse)
def post_fix_order(request: Request, table: str, body: Optional[FixOrderRequest] = None) -> PositionsResponse:
    core = _core(request, table)
    body = body or FixOrderRequest()
    key = body.group_key if "group_key" in body.model_fields_set else MISSING
    changed = core.fix_order(key)
    return PositionsResponse.from_mapping(table, changed)


__all__ = ["router"]
