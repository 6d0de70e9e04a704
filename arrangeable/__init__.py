"""Dense position maintenance for relational tables.

``OrderMaintenance`` keeps one table's position column gap-free per group;
``create_app`` exposes configured tables over HTTP. Ordering logic lives in
``arrangeable/logic/`` and route handlers in ``arrangeable/routes/``.
"""

from __future__ import annotations

from arrangeable.config import AppConfig, ArrangeableConfig, load_config
from arrangeable.logic import (
    MISSING,
    AmbiguousTargetError,
    ArrangeableError,
    MissingGroupKeyError,
    OrderMaintenance,
    UnknownTableError,
)

__all__ = [
    "MISSING",
    "AmbiguousTargetError",
    "AppConfig",
    "ArrangeableConfig",
    "ArrangeableError",
    "MissingGroupKeyError",
    "OrderMaintenance",
    "UnknownTableError",
    "load_config",
]
