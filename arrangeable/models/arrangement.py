"""Request and response payloads for the ordering routes.

Group keys distinguish "absent" from ``null``: an explicit ``null`` addresses
the group of rows whose group column is NULL. Routes read
``model_fields_set`` to tell the two apart.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

RecordId = Union[int, str]
GroupKey = Optional[Union[int, str]]


class SetOrderRequest(BaseModel):
    ids: List[RecordId] = Field(default_factory=list)
    group_key: GroupKey = None


class MoveRequest(BaseModel):
    ids: List[RecordId] = Field(default_factory=list)
    target_group_key: GroupKey = None


class FixOrderRequest(BaseModel):
    group_key: GroupKey = None


class PositionEntry(BaseModel):
    id: RecordId
    position: int


class PositionsResponse(BaseModel):
    table: str
    positions: List[PositionEntry]

    @classmethod
    def from_mapping(cls, table: str, positions: Dict[Any, int]) -> "PositionsResponse":
        entries = [PositionEntry(id=k, position=v) for k, v in sorted(positions.items(), key=lambda kv: kv[1])]
        return cls(table=table, positions=entries)


class OrderedIdsResponse(BaseModel):
    table: str
    ids: List[RecordId]


__all__ = [
    "FixOrderRequest",
    "MoveRequest",
    "OrderedIdsResponse",
    "PositionEntry",
    "PositionsResponse",
    "SetOrderRequest",
]
