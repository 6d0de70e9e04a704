"""Usage errors raised by the order maintenance layer.

Store failures are not wrapped: SQLAlchemy errors reach the caller as-is.
"""

from __future__ import annotations

from typing import Any, Iterable


class ArrangeableError(Exception):
    """Base class for ordering usage errors; ``code`` feeds problem+json."""

    code = "ARRANGE_ERROR"


class AmbiguousTargetError(ArrangeableError, ValueError):
    """Records named for a move span several groups and no target was given."""

    code = "ARRANGE_AMBIGUOUS_TARGET"

    def __init__(self, table: str, group_keys: Iterable[Any]) -> None:
        self.table = table
        self.group_keys = list(group_keys)
        super().__init__(
            f"{table}: cannot infer target group; records belong to {len(self.group_keys)} groups "
            f"{self.group_keys!r}, pass target_group_key explicitly"
        )


class MissingGroupKeyError(ArrangeableError, ValueError):
    """A grouped table was asked to operate without a group key."""

    code = "ARRANGE_GROUP_KEY_MISSING"

    def __init__(self, table: str, operation: str) -> None:
        self.table = table
        self.operation = operation
        super().__init__(f"{table}: {operation} requires a group key")


class UnknownTableError(ArrangeableError, LookupError):
    code = "ARRANGE_TABLE_UNKNOWN"

    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"table {table!r} is not configured for ordering")


class RecordMovingError(ArrangeableError, RuntimeError):
    """A record kept changing group while a delete waited for its lock."""

    code = "ARRANGE_RECORD_MOVING"

    def __init__(self, table: str, record_id: Any, attempts: int) -> None:
        self.table = table
        self.record_id = record_id
        self.attempts = attempts
        super().__init__(
            f"{table}: record {record_id!r} changed group {attempts} times during delete; retry later"
        )


__all__ = [
    "ArrangeableError",
    "AmbiguousTargetError",
    "MissingGroupKeyError",
    "RecordMovingError",
    "UnknownTableError",
]
