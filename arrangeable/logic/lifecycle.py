"""Host-side create/delete paths wired to the ordering entry points.

A host with its own ORM calls ``on_create``/``on_delete`` from its own
create and delete code; these helpers are that code for hosts that work
with plain rows. Both run in one locked transaction so a concurrent create
in the same group cannot read the same maximum position.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Tuple

from arrangeable.logic.errors import RecordMovingError
from arrangeable.logic.order_maintenance import MISSING, OrderMaintenance

logger = logging.getLogger(__name__)

_DELETE_ATTEMPTS = 3


def create_record(core: OrderMaintenance, values: Mapping[str, Any]) -> Tuple[Any, Dict[str, Any]]:
    """Insert a row at the end of its group.

    Returns ``(primary_key, values_written)``.
    """
    record = dict(values)
    with core.transaction(core.group_key_of(record)) as conn:
        core.on_create(record, conn=conn)
        pk = core.store.insert_row(conn, record)
    logger.info(
        "record_created table=%s pk=%r position=%r",
        core.table,
        pk,
        record.get(core.config.position_field),
    )
    return pk, record


def delete_record(core: OrderMaintenance, record_id: Any) -> bool:
    """Delete a row and close the gap it leaves. Returns False when absent."""
    for _ in range(_DELETE_ATTEMPTS):
        with core.store.engine.connect() as probe:
            exists, group_key = core.store.group_key_for(probe, record_id)
        if not exists:
            return False
        with core.transaction(group_key) as conn:
            # Re-read under the lock; the row may have moved groups meanwhile
            exists, current = core.store.group_key_for(conn, record_id)
            if not exists:
                return False
            if current != group_key:
                logger.info("record_moved_during_delete table=%s pk=%r", core.table, record_id)
                continue
            core.store.delete_row(conn, record_id)
            core.on_delete(group_key if core.grouped else MISSING, conn=conn)
        logger.info("record_deleted table=%s pk=%r group=%r", core.table, record_id, group_key)
        return True
    logger.warning("record_delete_gave_up table=%s pk=%r attempts=%s", core.table, record_id, _DELETE_ATTEMPTS)
    raise RecordMovingError(core.table, record_id, _DELETE_ATTEMPTS)
