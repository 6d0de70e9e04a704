"""Dense position maintenance for one table.

Keeps the position column of every group contiguous from ``start_order``
with step 1. The host application calls ``on_create`` before inserting a
row and ``on_delete`` after removing one; ``fix_order``, ``set_order`` and
``move_to_group`` are explicit reordering operations.

Each public method runs its reads and writes in one transaction holding the
locks of every group it touches. Pass ``conn`` to run inside a transaction
the caller already owns; only transaction-scoped database locks are taken
then, so callers should open it with ``transaction()``.

Caution: ``set_order`` and ``move_to_group`` trust the id lists they are
given. Unknown ids are silently skipped and duplicated ids end up with the
position of their last occurrence.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from arrangeable.config import ArrangeableConfig
from arrangeable.db.base import get_engine
from arrangeable.logic.errors import AmbiguousTargetError, MissingGroupKeyError
from arrangeable.logic.store import ALL_GROUPS, SqlStore

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


# Distinguishes "no group key supplied" from an explicit None (the NULL group)
MISSING: Any = _Missing()


class _Unit:
    """A transaction plus the locks taken so far inside it."""

    def __init__(self, store: SqlStore, conn: Connection, locks: Optional[ExitStack]) -> None:
        self.store = store
        self.conn = conn
        self._locks = locks
        self._held: set = set()

    def lock(self, group_keys: Iterable[Any]) -> None:
        pending = [k for k in group_keys if self.store.lock_token(k) not in self._held]
        if not pending:
            return
        self.store.lock_groups(self.conn, pending, self._locks)
        self._held.update(self.store.lock_token(k) for k in pending)


class OrderMaintenance:
    def __init__(
        self,
        config: ArrangeableConfig,
        engine: Engine | None = None,
        store: SqlStore | None = None,
    ) -> None:
        self.config = config
        self.store = store or SqlStore(engine or get_engine(), config)

    @property
    def table(self) -> str:
        return self.config.table

    @property
    def grouped(self) -> bool:
        return self.config.group_field is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def group_key_of(self, record: Any) -> Any:
        """Read the group key off a mapping or attribute-style record."""
        if not self.grouped:
            return ALL_GROUPS
        field = self.config.group_field
        if isinstance(record, Mapping):
            return record.get(field)
        return getattr(record, field, None)  # type: ignore[arg-type]

    def _scope(self, group_key: Any, operation: str) -> Any:
        if not self.grouped:
            return ALL_GROUPS
        if group_key is MISSING:
            logger.warning("group_key_missing table=%s operation=%s", self.table, operation)
            raise MissingGroupKeyError(self.table, operation)
        return group_key

    @contextmanager
    def _unit(self, conn: Optional[Connection], group_keys: Iterable[Any] = ()) -> Iterator[_Unit]:
        if conn is not None:
            unit = _Unit(self.store, conn, None)
            unit.lock(group_keys)
            yield unit
            return
        # Outer stack: process locks are released only after the commit
        with ExitStack() as locks:
            try:
                with self.store.transaction() as own:
                    unit = _Unit(self.store, own, locks)
                    unit.lock(group_keys)
                    yield unit
            except SQLAlchemyError:
                logger.error("store_failure table=%s; transaction rolled back", self.table, exc_info=True)
                raise

    @contextmanager
    def transaction(self, *group_keys: Any) -> Iterator[Connection]:
        """Open a transaction holding the locks of ``group_keys``.

        An ungrouped table has one lock and ignores the keys. A grouped table
        has no lock that excludes every group, so at least one key is required.
        """
        if self.grouped:
            if not group_keys:
                self._scope(MISSING, "transaction")
            keys = list(group_keys)
        else:
            keys = [ALL_GROUPS]
        with self._unit(None, keys) as unit:
            yield unit.conn

    # ------------------------------------------------------------------
    # Lifecycle entry points
    # ------------------------------------------------------------------

    def on_create(self, record: Any, conn: Optional[Connection] = None) -> int | None:
        """Place a record about to be inserted at the end of its group.

        Sets the position field on ``record`` in place and returns it; the
        caller persists the record. Returns None when ``handle_create`` is off.
        """
        if not self.config.handle_create:
            return None
        group_key = self.group_key_of(record)
        with self._unit(conn, [group_key]) as unit:
            count, max_pos = self.store.max_position(unit.conn, group_key)
        if count == 0:
            position = self.config.start_order
        elif max_pos is None:
            logger.warning(
                "on_create_null_positions table=%s group=%r rows=%s",
                self.table,
                group_key,
                count,
            )
            position = self.config.start_order
        else:
            position = max_pos + 1
        if isinstance(record, Mapping):
            record[self.config.position_field] = position
        else:
            setattr(record, self.config.position_field, position)
        logger.debug("on_create table=%s group=%r position=%s", self.table, group_key, position)
        return position

    def on_delete(self, group_key: Any = MISSING, conn: Optional[Connection] = None) -> Dict[Any, int]:
        """Close the gap a deleted record left in its group."""
        if not self.config.handle_delete:
            return {}
        return self.fix_order(group_key, conn=conn)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _fix_order(self, conn: Connection, group_key: Any) -> Dict[Any, int]:
        changed: Dict[Any, int] = {}
        for offset, (record_id, position) in enumerate(self.store.ordered_rows(conn, group_key)):
            target = self.config.start_order + offset
            if position != target:
                changed[record_id] = target
        self.store.apply_updates(conn, [{"pk": k, "position": v} for k, v in changed.items()])
        logger.info("fix_order table=%s group=%r changed=%s", self.table, group_key, len(changed))
        return changed

    def fix_order(self, group_key: Any = MISSING, conn: Optional[Connection] = None) -> Dict[Any, int]:
        """Renumber a group contiguously, keeping the current relative order.

        Only rows whose position changes are written, so a second call on an
        untouched group writes nothing. Returns the new positions written.
        """
        scope = self._scope(group_key, "fix_order")
        with self._unit(conn, [scope]) as unit:
            return self._fix_order(unit.conn, scope)

    def _set_order(self, conn: Connection, ids: Sequence[Any], group_key: Any) -> Dict[Any, int]:
        stamp = self.grouped and group_key is not MISSING
        positions: Dict[Any, int] = {}
        updates: List[Dict[str, Any]] = []
        for offset, record_id in enumerate(ids):
            update: Dict[str, Any] = {"pk": record_id, "position": self.config.start_order + offset}
            if stamp:
                update["group"] = group_key
            updates.append(update)
            positions[record_id] = update["position"]
        self.store.apply_updates(conn, updates)
        logger.info(
            "set_order table=%s group=%r count=%s stamped=%s",
            self.table,
            group_key,
            len(updates),
            stamp,
        )
        return positions

    def set_order(
        self,
        ids: Iterable[Any],
        group_key: Any = MISSING,
        conn: Optional[Connection] = None,
    ) -> Dict[Any, int]:
        """Give the i-th id of ``ids`` position ``start_order + i``.

        When ``group_key`` is supplied on a grouped table, every listed record
        is also moved into that group. No validation is done on ``ids``.
        Returns the position assigned to each id.
        """
        ids = list(ids)
        if not ids:
            return {}
        if not self.grouped:
            if group_key is not MISSING:
                logger.debug("set_order_group_ignored table=%s group=%r", self.table, group_key)
            with self._unit(conn, [ALL_GROUPS]) as unit:
                return self._set_order(unit.conn, ids, MISSING)
        with self._unit(conn) as unit:
            self._lock_sources(unit, ids, group_key, infer_target=False)
            return self._set_order(unit.conn, ids, group_key)

    def move_to_group(
        self,
        ids: Iterable[Any],
        target_group_key: Any = MISSING,
        conn: Optional[Connection] = None,
    ) -> Dict[Any, int]:
        """Move records to the end of a group, in the order given.

        Records already in the target keep their relative order ahead of the
        moved ones. Groups that lose records are renumbered afterwards. On an
        ungrouped table the records go to the end of the whole table and
        ``target_group_key`` is ignored. Without a target, all records must
        currently share one group, which becomes the target.

        Returns the final positions of the target group.
        """
        ids = list(ids)
        if not ids:
            return {}

        if not self.grouped:
            with self._unit(conn, [ALL_GROUPS]) as unit:
                moving = set(ids)
                sequence = [i for i in self.store.ordered_ids(unit.conn) if i not in moving] + ids
                return self._set_order(unit.conn, sequence, MISSING)

        with self._unit(conn) as unit:
            sources, target = self._lock_sources(unit, ids, target_group_key, infer_target=True)
            moving = set(ids)
            sequence = [i for i in self.store.ordered_ids(unit.conn, target) if i not in moving] + ids
            positions = self._set_order(unit.conn, sequence, target)
            needs_fix = [k for k in sources if k != target]
            for key in needs_fix:
                self._fix_order(unit.conn, key)
        logger.info(
            "move_to_group table=%s target=%r moved=%s sources_fixed=%r",
            self.table,
            target,
            len(ids),
            needs_fix,
        )
        return positions

    def _lock_sources(
        self,
        unit: _Unit,
        ids: Sequence[Any],
        target_group_key: Any,
        infer_target: bool,
    ) -> Tuple[List[Any], Any]:
        """Lock the current groups of ``ids`` plus the target; return ``(sources, target)``.

        Group membership is re-read once the locks are held. Rows that moved
        meanwhile bring their new groups in, which are locked in turn until
        the set is stable.
        """
        sources = self.store.group_keys_of(unit.conn, ids)
        while True:
            if infer_target:
                target = self._resolve_target(sources, target_group_key)
            else:
                target = target_group_key
            unit.lock([k for k in (target, *sources) if k is not MISSING])
            current = self.store.group_keys_of(unit.conn, ids)
            if current == sources:
                return sources, target
            logger.info(
                "sources_changed table=%s before=%r after=%r",
                self.table,
                sources,
                current,
            )
            sources = current

    def _resolve_target(self, source_keys: List[Any], target_group_key: Any) -> Any:
        if target_group_key is not MISSING:
            return target_group_key
        if len(source_keys) != 1:
            logger.warning(
                "move_target_ambiguous table=%s source_groups=%r",
                self.table,
                source_keys,
            )
            raise AmbiguousTargetError(self.table, source_keys)
        return source_keys[0]

    def ordered(
        self,
        group_key: Any = MISSING,
        direction: str = "asc",
        conn: Optional[Connection] = None,
    ) -> List[Any]:
        """Primary keys of a group sorted by position."""
        direction = (direction or "asc").lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"direction must be 'asc' or 'desc', got {direction!r}")
        scope = self._scope(group_key, "ordered")
        if conn is not None:
            return self.store.ordered_ids(conn, scope, direction)
        with self.store.engine.connect() as c:
            return self.store.ordered_ids(c, scope, direction)


__all__ = ["MISSING", "OrderMaintenance"]
