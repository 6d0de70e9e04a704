"""Functional tests for dense position maintenance.

Runs the ordering core against the SQLite cars/passengers fixture schema:
cars are a single ungrouped sequence, passengers are grouped by ``car_id``.
Records are created and deleted through the lifecycle helpers so every test
exercises the same on_create/on_delete path a host application would.
"""

from __future__ import annotations

import itertools
import logging
import threading
import types

import pytest
from sqlalchemy import text as sql_text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from arrangeable.config import ArrangeableConfig
from arrangeable.db.base import build_engine
from arrangeable.db.migrations_runner import apply_migrations
from arrangeable.http.error_mapping import ARRANGE_ERROR_MAP
from arrangeable.logic.errors import AmbiguousTargetError, MissingGroupKeyError, RecordMovingError
from arrangeable.logic.lifecycle import create_record, delete_record
from arrangeable.logic.order_maintenance import OrderMaintenance
from arrangeable.logic.store import GroupLocks, SqlStore

from conftest import MIGRATIONS_DIR
from ordering_helpers import ids_of, make_cars, make_passengers, orders_of, rows, set_position


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def test_create_without_group(engine, cars) -> None:
    make_cars(cars, 2)
    assert orders_of(engine, "cars") == [0, 1]


def test_create_with_group_starts_each_group_over(engine, cars, passengers) -> None:
    car1, car2 = make_cars(cars, 2)
    make_passengers(passengers, car1, 3)
    make_passengers(passengers, car2, 3)

    assert orders_of(engine, "passengers", car1) == [0, 1, 2]
    assert orders_of(engine, "passengers", car2) == [0, 1, 2]


def test_custom_start_order_per_table(engine) -> None:
    cars = OrderMaintenance(ArrangeableConfig(table="cars", start_order=1), engine=engine)
    passengers = OrderMaintenance(
        ArrangeableConfig(table="passengers", group_field="car_id", start_order=2),
        engine=engine,
    )
    car_ids = make_cars(cars, 3)
    make_passengers(passengers, car_ids[1], 3)

    assert orders_of(engine, "cars") == [1, 2, 3]
    assert orders_of(engine, "passengers", car_ids[1]) == [2, 3, 4]


def test_sequential_creates_follow_creation_order(engine, passengers) -> None:
    created = make_passengers(passengers, 7, 6)
    assert rows(engine, "passengers", 7) == [(pid, i) for i, pid in enumerate(created)]


def test_on_create_sets_attribute_records_in_place(engine, passengers) -> None:
    make_passengers(passengers, 1, 2)
    record = types.SimpleNamespace(car_id=1)

    position = passengers.on_create(record)

    assert position == 2
    assert record.order == 2


def test_on_create_does_not_write(engine, cars) -> None:
    make_cars(cars, 2)
    record: dict = {}
    cars.on_create(record)
    assert record == {"order": 2}
    assert orders_of(engine, "cars") == [0, 1]


def test_on_create_with_only_null_positions_uses_start_order(engine, passengers, caplog) -> None:
    with engine.begin() as conn:
        conn.execute(sql_text('INSERT INTO passengers (car_id, "order") VALUES (3, NULL)'))

    with caplog.at_level(logging.WARNING, logger="arrangeable.logic.order_maintenance"):
        position = passengers.on_create({"car_id": 3})

    assert position == 0
    assert "on_create_null_positions" in caplog.text


def test_handle_create_disabled_leaves_record_alone(engine) -> None:
    core = OrderMaintenance(ArrangeableConfig(table="cars", handle_create=False), engine=engine)
    record = {"order": 42}
    assert core.on_create(record) is None
    assert record == {"order": 42}


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

def test_delete_without_group_closes_gap(engine, cars) -> None:
    ids = make_cars(cars, 5)
    assert rows(engine, "cars")[-1] == (ids[-1], 4)

    assert delete_record(cars, ids[2]) is True

    assert rows(engine, "cars")[-1] == (ids[-1], 3)
    assert orders_of(engine, "cars") == [0, 1, 2, 3]
    assert ids_of(engine, "cars") == [ids[0], ids[1], ids[3], ids[4]]


def test_delete_with_different_groups(engine, cars, passengers) -> None:
    car1, car2 = make_cars(cars, 2)
    p1 = make_passengers(passengers, car1, 5)
    p2 = make_passengers(passengers, car2, 5)

    delete_record(passengers, p1[0])
    delete_record(passengers, p1[2])
    delete_record(passengers, p2[4])

    assert rows(engine, "passengers", car1) == [(p1[1], 0), (p1[3], 1), (p1[4], 2)]
    assert orders_of(engine, "passengers", car2) == [0, 1, 2, 3]


def test_delete_middle_record_scenario(engine, passengers) -> None:
    p = make_passengers(passengers, 1, 5)
    with engine.begin() as conn:
        conn.execute(sql_text("DELETE FROM passengers WHERE id = :id"), {"id": p[2]})

    passengers.on_delete(1)

    assert rows(engine, "passengers", 1) == [(p[0], 0), (p[1], 1), (p[3], 2), (p[4], 3)]


def test_delete_missing_record_returns_false(engine, cars) -> None:
    make_cars(cars, 2)
    assert delete_record(cars, 999) is False
    assert orders_of(engine, "cars") == [0, 1]


def test_on_delete_grouped_requires_group_key(engine, passengers) -> None:
    with pytest.raises(MissingGroupKeyError):
        passengers.on_delete()


def test_handle_delete_disabled_skips_fix(engine, cars) -> None:
    ids = make_cars(cars, 3)
    core = OrderMaintenance(ArrangeableConfig(table="cars", handle_delete=False), engine=engine)

    assert delete_record(core, ids[0]) is True

    assert orders_of(engine, "cars") == [1, 2]


# ---------------------------------------------------------------------------
# Fix order
# ---------------------------------------------------------------------------

def test_fix_order_without_group(engine, cars) -> None:
    ids = make_cars(cars, 5)
    set_position(engine, "cars", ids[3], 10)
    set_position(engine, "cars", ids[4], 20)

    changed = cars.fix_order()

    assert changed == {ids[3]: 3, ids[4]: 4}
    assert rows(engine, "cars") == [(rid, i) for i, rid in enumerate(ids)]


def test_fix_order_with_group(engine, cars, passengers) -> None:
    (car,) = make_cars(cars, 1)
    p = make_passengers(passengers, car, 5)
    set_position(engine, "passengers", p[3], 10)
    set_position(engine, "passengers", p[4], 20)

    passengers.fix_order(car)

    assert orders_of(engine, "passengers", car) == [0, 1, 2, 3, 4]
    assert ids_of(engine, "passengers", car) == p


def test_fix_order_leaves_other_groups_untouched(engine, passengers) -> None:
    make_passengers(passengers, 1, 3)
    p2 = make_passengers(passengers, 2, 3)
    set_position(engine, "passengers", p2[0], 7)

    passengers.fix_order(1)

    assert rows(engine, "passengers", 2) == [(p2[1], 1), (p2[2], 2), (p2[0], 7)]


def test_fix_order_is_idempotent(engine, cars, monkeypatch) -> None:
    ids = make_cars(cars, 4)
    set_position(engine, "cars", ids[0], 9)
    assert cars.fix_order() == {ids[1]: 0, ids[2]: 1, ids[3]: 2, ids[0]: 3}

    written: list = []
    real_apply = cars.store.apply_updates

    def spy(conn, updates):  # type: ignore[no-untyped-def]
        written.extend(updates)
        return real_apply(conn, updates)

    monkeypatch.setattr(cars.store, "apply_updates", spy)
    assert cars.fix_order() == {}
    assert written == []


def test_fix_order_grouped_without_key_raises(engine, passengers) -> None:
    p = make_passengers(passengers, 1, 3)
    set_position(engine, "passengers", p[0], 5)

    with pytest.raises(MissingGroupKeyError):
        passengers.fix_order()

    assert orders_of(engine, "passengers", 1) == [1, 2, 5]


def test_fix_order_null_group(engine, passengers) -> None:
    p = [create_record(passengers, {"car_id": None})[0] for _ in range(3)]
    assert orders_of(engine, "passengers") == [0, 1, 2]
    set_position(engine, "passengers", p[0], 9)

    passengers.fix_order(None)

    assert rows(engine, "passengers") == [(p[1], 0), (p[2], 1), (p[0], 2)]


def test_fix_order_rolls_back_on_write_failure(engine, cars, monkeypatch) -> None:
    ids = make_cars(cars, 5)
    set_position(engine, "cars", ids[3], 10)
    set_position(engine, "cars", ids[4], 20)
    real_apply = cars.store.apply_updates

    def failing(conn, updates):  # type: ignore[no-untyped-def]
        real_apply(conn, updates)
        raise OperationalError("UPDATE cars", {}, Exception("disk I/O error"))

    monkeypatch.setattr(cars.store, "apply_updates", failing)
    with pytest.raises(SQLAlchemyError):
        cars.fix_order()

    assert orders_of(engine, "cars") == [0, 1, 2, 10, 20]


def test_store_failure_propagates_unchanged(engine) -> None:
    core = OrderMaintenance(ArrangeableConfig(table="no_such_table"), engine=engine)
    with pytest.raises(OperationalError):
        core.fix_order()


# ---------------------------------------------------------------------------
# Set order
# ---------------------------------------------------------------------------

def test_set_order_is_total_bijection(engine, cars) -> None:
    ids = make_cars(cars, 5)
    wanted = [ids[3], ids[0], ids[4], ids[2], ids[1]]

    positions = cars.set_order(wanted)

    assert positions == {rid: i for i, rid in enumerate(wanted)}
    assert ids_of(engine, "cars") == wanted
    assert orders_of(engine, "cars") == [0, 1, 2, 3, 4]


def test_set_order_uses_start_order(engine) -> None:
    core = OrderMaintenance(ArrangeableConfig(table="cars", start_order=5), engine=engine)
    ids = make_cars(core, 3)
    core.set_order(list(reversed(ids)))
    assert rows(engine, "cars") == [(ids[2], 5), (ids[1], 6), (ids[0], 7)]


def test_set_order_with_group_key_stamps_group(engine, passengers) -> None:
    p1 = make_passengers(passengers, 1, 3)
    p2 = make_passengers(passengers, 2, 2)

    passengers.set_order([p2[0], p2[1], p1[0]], group_key=2)

    assert rows(engine, "passengers", 2) == [(p2[0], 0), (p2[1], 1), (p1[0], 2)]
    # The primitive does not renumber the group it took records from
    assert rows(engine, "passengers", 1) == [(p1[1], 1), (p1[2], 2)]


def test_set_order_skips_unknown_ids(engine, cars) -> None:
    ids = make_cars(cars, 3)

    cars.set_order([ids[2], 999, ids[0], ids[1]])

    assert rows(engine, "cars") == [(ids[2], 0), (ids[0], 2), (ids[1], 3)]


def test_set_order_duplicate_id_last_write_wins(engine, cars) -> None:
    ids = make_cars(cars, 2)
    positions = cars.set_order([ids[0], ids[1], ids[0]])
    assert positions[ids[0]] == 2
    assert rows(engine, "cars") == [(ids[1], 1), (ids[0], 2)]


def test_set_order_empty_is_noop(engine, cars) -> None:
    make_cars(cars, 2)
    assert cars.set_order([]) == {}
    assert orders_of(engine, "cars") == [0, 1]


def test_set_order_ignores_group_key_without_grouping(engine, cars) -> None:
    ids = make_cars(cars, 2)
    cars.set_order([ids[1], ids[0]], group_key=12)
    assert ids_of(engine, "cars") == [ids[1], ids[0]]


# ---------------------------------------------------------------------------
# Move to group
# ---------------------------------------------------------------------------

def test_move_without_group(engine, cars) -> None:
    ids = make_cars(cars, 5)
    assert ids == [1, 2, 3, 4, 5]

    cars.move_to_group([2, 1])

    assert ids_of(engine, "cars") == [3, 4, 5, 2, 1]
    assert orders_of(engine, "cars") == [0, 1, 2, 3, 4]


def test_move_without_group_ignores_target(engine, cars) -> None:
    ids = make_cars(cars, 3)
    cars.move_to_group([ids[0]], target_group_key=99)
    assert ids_of(engine, "cars") == [ids[1], ids[2], ids[0]]


def test_move_infers_target_when_one_group(engine, cars, passengers) -> None:
    (car,) = make_cars(cars, 1)
    make_passengers(passengers, car, 5)
    reverse_ids = list(reversed(ids_of(engine, "passengers", car)))

    passengers.move_to_group(reverse_ids)

    assert ids_of(engine, "passengers", car) == reverse_ids
    assert orders_of(engine, "passengers", car) == [0, 1, 2, 3, 4]


def test_move_from_two_groups_including_target(engine, cars, passengers) -> None:
    car1, car2 = make_cars(cars, 2)
    p1 = make_passengers(passengers, car1, 5)
    p2 = make_passengers(passengers, car2, 5)
    pulled = [p1[0], p2[1]]

    passengers.move_to_group(pulled, car2)

    assert ids_of(engine, "passengers", car1) == p1[1:]
    assert orders_of(engine, "passengers", car1) == [0, 1, 2, 3]
    assert ids_of(engine, "passengers", car2) == [p2[0], p2[2], p2[3], p2[4], *pulled]
    assert orders_of(engine, "passengers", car2) == [0, 1, 2, 3, 4, 5]


def test_move_preserves_source_order_and_appends_to_target(engine, passengers) -> None:
    p1 = make_passengers(passengers, 1, 5)
    p2 = make_passengers(passengers, 2, 2)

    positions = passengers.move_to_group([p1[3], p1[1]], 2)

    assert rows(engine, "passengers", 1) == [(p1[0], 0), (p1[2], 1), (p1[4], 2)]
    assert ids_of(engine, "passengers", 2) == [p2[0], p2[1], p1[3], p1[1]]
    assert positions == {p2[0]: 0, p2[1]: 1, p1[3]: 2, p1[1]: 3}


def test_move_into_empty_group(engine, passengers) -> None:
    p1 = make_passengers(passengers, 1, 3)

    passengers.move_to_group([p1[2], p1[0]], 4)

    assert rows(engine, "passengers", 4) == [(p1[2], 0), (p1[0], 1)]
    assert rows(engine, "passengers", 1) == [(p1[1], 0)]


def test_move_into_null_group(engine, passengers) -> None:
    p1 = make_passengers(passengers, 1, 3)

    passengers.move_to_group([p1[0]], None)

    with engine.connect() as conn:
        null_rows = conn.execute(
            sql_text('SELECT id, "order" FROM passengers WHERE car_id IS NULL')
        ).fetchall()
    assert [tuple(r) for r in null_rows] == [(p1[0], 0)]
    assert rows(engine, "passengers", 1) == [(p1[1], 0), (p1[2], 1)]


def test_move_ambiguous_target_raises_without_mutation(engine, passengers) -> None:
    p1 = make_passengers(passengers, 1, 2)
    p2 = make_passengers(passengers, 2, 2)
    before = rows(engine, "passengers")

    with pytest.raises(AmbiguousTargetError) as excinfo:
        passengers.move_to_group([p1[0], p2[0]])

    assert isinstance(excinfo.value, ValueError)
    assert excinfo.value.group_keys == [1, 2]
    assert rows(engine, "passengers") == before


def test_move_unknown_ids_without_target_is_ambiguous(engine, passengers) -> None:
    make_passengers(passengers, 1, 2)
    with pytest.raises(AmbiguousTargetError):
        passengers.move_to_group([998, 999])


def test_move_empty_is_noop(engine, passengers) -> None:
    make_passengers(passengers, 1, 2)
    assert passengers.move_to_group([]) == {}
    assert orders_of(engine, "passengers", 1) == [0, 1]


# ---------------------------------------------------------------------------
# Ordered view, transactions and concurrency
# ---------------------------------------------------------------------------

def test_ordered_ascending_and_descending(engine, passengers) -> None:
    p = make_passengers(passengers, 1, 3)
    make_passengers(passengers, 2, 2)

    assert passengers.ordered(1) == p
    assert passengers.ordered(1, direction="desc") == list(reversed(p))


def test_ordered_rejects_unknown_direction(engine, cars) -> None:
    with pytest.raises(ValueError):
        cars.ordered(direction="sideways")


def test_ordered_grouped_requires_key(engine, passengers) -> None:
    with pytest.raises(MissingGroupKeyError):
        passengers.ordered()


def test_operations_join_caller_transaction(engine, cars) -> None:
    ids = make_cars(cars, 3)

    with pytest.raises(RuntimeError):
        with cars.transaction() as conn:
            cars.set_order(list(reversed(ids)), conn=conn)
            assert cars.ordered(conn=conn) == list(reversed(ids))
            raise RuntimeError("abort")

    assert ids_of(engine, "cars") == ids


def test_concurrent_creates_in_one_group_stay_dense(tmp_path) -> None:
    eng = build_engine(f"sqlite:///{tmp_path / 'concurrent.db'}")
    apply_migrations(eng, MIGRATIONS_DIR, journal_path=tmp_path / "journal.json")
    core = OrderMaintenance(ArrangeableConfig(table="passengers", group_field="car_id"), engine=eng)
    errors: list = []

    def worker() -> None:
        try:
            make_passengers(core, 1, 5)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    try:
        assert errors == []
        assert orders_of(eng, "passengers", 1) == list(range(30))
    finally:
        eng.dispose()


def test_grouped_transaction_requires_a_group_key(engine, passengers) -> None:
    with pytest.raises(MissingGroupKeyError):
        with passengers.transaction():
            pass


def test_process_locks_stay_bounded_across_many_groups(engine) -> None:
    locks = GroupLocks(stripes=8)
    cfg = ArrangeableConfig(table="passengers", group_field="car_id")
    core = OrderMaintenance(cfg, store=SqlStore(engine, cfg, locks=locks))

    for car_id in range(1, 201):
        pk, _ = create_record(core, {"car_id": car_id})
        assert delete_record(core, pk) is True

    assert len(locks) == 8
    stripes = {locks.stripe(core.store.lock_token(car_id)) for car_id in range(1, 201)}
    assert stripes <= set(range(8))
    assert rows(engine, "passengers") == []


def test_group_locks_take_each_stripe_once() -> None:
    locks = GroupLocks(stripes=1)
    assert len(locks.for_tokens(["passengers:=1", "passengers:=2", "passengers:<null>"])) == 1


# ---------------------------------------------------------------------------
# Rows that change group between the first read and the locks
# ---------------------------------------------------------------------------

def _regroup_on_second_read(monkeypatch, core, moved_id, displaced_id) -> list:
    """Move ``moved_id`` into car 2 just before the keys are re-read under lock.

    Car 2 becomes ``[q0, moved, displaced]`` so it has a gap once the moved
    row leaves again.
    """
    real_keys = core.store.group_keys_of
    calls: list = []

    def regrouping(conn, ids):  # type: ignore[no-untyped-def]
        calls.append(list(ids))
        if len(calls) == 2:
            conn.execute(sql_text('UPDATE passengers SET "order" = 2 WHERE id = :id'), {"id": displaced_id})
            conn.execute(
                sql_text('UPDATE passengers SET car_id = 2, "order" = 1 WHERE id = :id'),
                {"id": moved_id},
            )
        return real_keys(conn, ids)

    monkeypatch.setattr(core.store, "group_keys_of", regrouping)
    return calls


def test_move_fixes_group_that_appears_on_reread(engine, passengers, monkeypatch) -> None:
    p = make_passengers(passengers, 1, 3)
    q = make_passengers(passengers, 2, 2)
    calls = _regroup_on_second_read(monkeypatch, passengers, p[1], q[1])

    passengers.move_to_group([p[0], p[1]], 3)

    assert len(calls) == 3
    assert rows(engine, "passengers", 3) == [(p[0], 0), (p[1], 1)]
    assert rows(engine, "passengers", 1) == [(p[2], 0)]
    assert rows(engine, "passengers", 2) == [(q[0], 0), (q[1], 1)]


def test_move_inferred_target_turns_ambiguous_on_reread(engine, passengers, monkeypatch) -> None:
    p = make_passengers(passengers, 1, 3)
    q = make_passengers(passengers, 2, 2)
    before = rows(engine, "passengers")
    _regroup_on_second_read(monkeypatch, passengers, p[1], q[1])

    with pytest.raises(AmbiguousTargetError) as excinfo:
        passengers.move_to_group([p[0], p[1]])

    assert excinfo.value.group_keys == [1, 2]
    assert rows(engine, "passengers") == before


def test_set_order_locks_group_that_appears_on_reread(engine, passengers, monkeypatch) -> None:
    p = make_passengers(passengers, 1, 3)
    q = make_passengers(passengers, 2, 2)
    _regroup_on_second_read(monkeypatch, passengers, p[1], q[1])
    locked: list = []
    real_lock = passengers.store.lock_groups

    def recording(conn, keys, stack=None):  # type: ignore[no-untyped-def]
        keys = list(keys)
        locked.extend(keys)
        return real_lock(conn, keys, stack)

    monkeypatch.setattr(passengers.store, "lock_groups", recording)

    passengers.set_order([p[1], p[0]], 1)

    assert 2 in locked
    assert rows(engine, "passengers", 1) == [(p[1], 0), (p[0], 1), (p[2], 2)]


def test_delete_gives_up_when_record_keeps_changing_group(engine, passengers, monkeypatch) -> None:
    p = make_passengers(passengers, 1, 2)
    reads = itertools.count()

    def flapping(conn, record_id):  # type: ignore[no-untyped-def]
        return True, 1 if next(reads) % 2 == 0 else 2

    monkeypatch.setattr(passengers.store, "group_key_for", flapping)

    with pytest.raises(RecordMovingError) as excinfo:
        delete_record(passengers, p[0])

    assert ARRANGE_ERROR_MAP[excinfo.value.code]["status"] == 409
    assert excinfo.value.attempts == 3
    assert ids_of(engine, "passengers", 1) == p
