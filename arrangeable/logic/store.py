"""Store adapter: the narrow SQL surface the ordering core reads and writes through.

All statements are plain ``text()`` SQL against one configured table, with
identifiers quoted by the dialect (the default position column ``order`` is
a reserved word). Every method takes the ``Connection`` of the transaction it
belongs to; opening and committing transactions is the caller's business.

``ALL_GROUPS`` as the group argument means "no group filter" and is what the
core passes when grouping is disabled. ``None`` is a real group (rows whose
group column IS NULL).
"""

from __future__ import annotations

import hashlib
import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import bindparam, text as sql_text
from sqlalchemy.engine import Connection, Engine

from arrangeable.config import ArrangeableConfig

logger = logging.getLogger(__name__)


class _AllGroups:
    def __repr__(self) -> str:
        return "ALL_GROUPS"


ALL_GROUPS: Any = _AllGroups()


def advisory_key(token: str) -> int:
    """Map a lock token onto the signed 64-bit keyspace of pg advisory locks."""
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class GroupLocks:
    """Process-local re-entrant mutexes striped over lock tokens.

    A fixed pool of ``stripes`` RLocks serves every token, so memory does not
    grow with the number of groups ever touched. Unrelated groups that hash to
    the same stripe serialize against each other.
    """

    def __init__(self, stripes: int = 64) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._locks)

    def stripe(self, token: str) -> int:
        return advisory_key(token) % len(self._locks)

    def for_tokens(self, tokens: Iterable[str]) -> List[threading.RLock]:
        """Locks covering ``tokens``, one per stripe, in stripe order."""
        return [self._locks[i] for i in sorted({self.stripe(t) for t in tokens})]


_PROCESS_LOCKS = GroupLocks()


class SqlStore:
    def __init__(self, engine: Engine, config: ArrangeableConfig, locks: GroupLocks | None = None) -> None:
        self.engine = engine
        self.config = config
        self._locks = locks if locks is not None else _PROCESS_LOCKS
        quote = engine.dialect.identifier_preparer.quote
        self._table = quote(config.table)
        self._pk = quote(config.primary_key)
        self._pos = quote(config.position_field)
        self._grp = quote(config.group_field) if config.group_field else None

    # ------------------------------------------------------------------
    # Transactions and locking
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self.engine.begin() as conn:
            yield conn

    def lock_token(self, group_key: Any) -> str:
        if group_key is ALL_GROUPS:
            return f"{self.config.table}:*"
        if group_key is None:
            return f"{self.config.table}:<null>"
        # 1 and "1" may address the same row set; they share a lock
        return f"{self.config.table}:={group_key}"

    def lock_groups(
        self,
        conn: Connection,
        group_keys: Iterable[Any],
        stack: Optional[ExitStack] = None,
    ) -> None:
        """Take the mutual-exclusion locks for ``group_keys`` in token order.

        PostgreSQL gets a transaction-scoped advisory lock per group. When
        ``stack`` is given, process-local stripe locks are entered on it first;
        the stack must outlive the transaction so they are released after commit.
        """
        tokens = sorted({self.lock_token(k) for k in group_keys})
        if stack is not None:
            for lock in self._locks.for_tokens(tokens):
                stack.enter_context(lock)
        if conn.dialect.name == "postgresql":
            for token in tokens:
                conn.execute(
                    sql_text("SELECT pg_advisory_xact_lock(:key)"),
                    {"key": advisory_key(token)},
                )
        if tokens:
            logger.debug("groups_locked table=%s tokens=%s", self.config.table, tokens)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _where(self, group_key: Any) -> Tuple[str, Dict[str, Any]]:
        if group_key is ALL_GROUPS or self._grp is None:
            return "", {}
        if group_key is None:
            return f" WHERE {self._grp} IS NULL", {}
        return f" WHERE {self._grp} = :grp", {"grp": group_key}

    def _order_by(self, direction: str = "ASC") -> str:
        # NULL positions sort last on every dialect; pk breaks ties
        return (
            f" ORDER BY CASE WHEN {self._pos} IS NULL THEN 1 ELSE 0 END, "
            f"{self._pos} {direction}, {self._pk} {direction}"
        )

    def max_position(self, conn: Connection, group_key: Any = ALL_GROUPS) -> Tuple[int, Optional[int]]:
        """Return ``(row_count, max_position)`` for a group; max is None when no row has one."""
        where, params = self._where(group_key)
        row = conn.execute(
            sql_text(f"SELECT COUNT(*), MAX({self._pos}) FROM {self._table}{where}"),
            params,
        ).fetchone()
        count = int(row[0]) if row and row[0] is not None else 0
        max_pos = int(row[1]) if row and row[1] is not None else None
        return count, max_pos

    def ordered_rows(self, conn: Connection, group_key: Any = ALL_GROUPS) -> List[Tuple[Any, Optional[int]]]:
        """Return ``(pk, position)`` pairs of a group in ascending position order."""
        where, params = self._where(group_key)
        rows = conn.execute(
            sql_text(f"SELECT {self._pk}, {self._pos} FROM {self._table}{where}{self._order_by()}"),
            params,
        ).fetchall()
        return [(r[0], None if r[1] is None else int(r[1])) for r in rows]

    def ordered_ids(self, conn: Connection, group_key: Any = ALL_GROUPS, direction: str = "asc") -> List[Any]:
        where, params = self._where(group_key)
        order_by = self._order_by("DESC" if direction == "desc" else "ASC")
        rows = conn.execute(
            sql_text(f"SELECT {self._pk} FROM {self._table}{where}{order_by}"),
            params,
        ).fetchall()
        return [r[0] for r in rows]

    def group_keys_of(self, conn: Connection, ids: Sequence[Any]) -> List[Any]:
        """Distinct current group keys of the named records, in first-seen order."""
        if self._grp is None or not ids:
            return []
        stmt = sql_text(
            f"SELECT {self._pk}, {self._grp} FROM {self._table} WHERE {self._pk} IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        rows = conn.execute(stmt, {"ids": list(dict.fromkeys(ids))}).fetchall()
        by_id = {r[0]: r[1] for r in rows}
        keys: List[Any] = []
        for record_id in ids:
            if record_id in by_id and by_id[record_id] not in keys:
                keys.append(by_id[record_id])
        return keys

    def group_key_for(self, conn: Connection, record_id: Any) -> Tuple[bool, Any]:
        """Return ``(exists, group_key)`` for one record."""
        column = self._grp or "NULL"
        row = conn.execute(
            sql_text(f"SELECT {column} FROM {self._table} WHERE {self._pk} = :pk"),
            {"pk": record_id},
        ).fetchone()
        if row is None:
            return False, None
        return True, row[0]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply_updates(self, conn: Connection, updates: Sequence[Mapping[str, Any]]) -> int:
        """Apply per-record updates as executemany batches.

        Each mapping carries ``pk`` and ``position`` and, when the group column
        is to be stamped, ``group``. Rows with and without ``group`` are batched
        separately.
        """
        if not updates:
            return 0
        plain = [{"pk": u["pk"], "pos": u["position"]} for u in updates if "group" not in u]
        stamped = [{"pk": u["pk"], "pos": u["position"], "grp": u["group"]} for u in updates if "group" in u]
        if plain:
            conn.execute(
                sql_text(f"UPDATE {self._table} SET {self._pos} = :pos WHERE {self._pk} = :pk"),
                plain,
            )
        if stamped:
            if self._grp is None:
                raise ValueError(f"{self.config.table}: cannot stamp a group key on an ungrouped table")
            conn.execute(
                sql_text(
                    f"UPDATE {self._table} SET {self._pos} = :pos, {self._grp} = :grp WHERE {self._pk} = :pk"
                ),
                stamped,
            )
        return len(updates)

    def insert_row(self, conn: Connection, values: Mapping[str, Any]) -> Any:
        """Insert one row and return its primary key."""
        quote = self.engine.dialect.identifier_preparer.quote
        names = list(values)
        params = {f"v{i}": values[name] for i, name in enumerate(names)}
        columns = ", ".join(quote(n) for n in names)
        placeholders = ", ".join(f":v{i}" for i in range(len(names)))
        sql = f"INSERT INTO {self._table} ({columns}) VALUES ({placeholders})"
        if self.config.primary_key in values:
            conn.execute(sql_text(sql), params)
            return values[self.config.primary_key]
        if conn.dialect.insert_returning:
            return conn.execute(sql_text(f"{sql} RETURNING {self._pk}"), params).scalar_one()
        return conn.execute(sql_text(sql), params).lastrowid

    def delete_row(self, conn: Connection, record_id: Any) -> int:
        result = conn.execute(
            sql_text(f"DELETE FROM {self._table} WHERE {self._pk} = :pk"),
            {"pk": record_id},
        )
        return int(result.rowcount or 0)


__all__ = ["ALL_GROUPS", "GroupLocks", "SqlStore", "advisory_key"]
