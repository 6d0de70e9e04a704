"""Ordering logic: store adapter, order maintenance core and host glue."""

from arrangeable.logic.errors import (
    AmbiguousTargetError,
    ArrangeableError,
    MissingGroupKeyError,
    RecordMovingError,
    UnknownTableError,
)
from arrangeable.logic.order_maintenance import MISSING, OrderMaintenance
from arrangeable.logic.lifecycle import create_record, delete_record
from arrangeable.logic.store import ALL_GROUPS, GroupLocks, SqlStore

__all__ = [
    "ALL_GROUPS",
    "MISSING",
    "AmbiguousTargetError",
    "ArrangeableError",
    "GroupLocks",
    "MissingGroupKeyError",
    "OrderMaintenance",
    "RecordMovingError",
    "SqlStore",
    "UnknownTableError",
    "create_record",
    "delete_record",
]
