"""Functional test bootstrap for the ordering core.

Every test gets its own in-memory SQLite engine (StaticPool, one shared
connection) with the cars/passengers fixture schema applied by the SQL
migrations runner. Cars are one ungrouped sequence; passengers are grouped
by ``car_id``.
"""

from __future__ import annotations

import pathlib
import typing as t

import pytest
from sqlalchemy.engine import Engine

from arrangeable.config import ArrangeableConfig
from arrangeable.db.base import build_engine
from arrangeable.db.migrations_runner import apply_migrations
from arrangeable.logic.order_maintenance import OrderMaintenance

MIGRATIONS_DIR = pathlib.Path(__file__).resolve().parent / "migrations"


@pytest.fixture
def engine(tmp_path: pathlib.Path) -> t.Iterator[Engine]:
    eng = build_engine("sqlite+pysqlite:///:memory:")
    apply_migrations(eng, MIGRATIONS_DIR, journal_path=tmp_path / "journal.json")
    yield eng
    eng.dispose()


@pytest.fixture
def cars(engine: Engine) -> OrderMaintenance:
    return OrderMaintenance(ArrangeableConfig(table="cars"), engine=engine)


@pytest.fixture
def passengers(engine: Engine) -> OrderMaintenance:
    return OrderMaintenance(ArrangeableConfig(table="passengers", group_field="car_id"), engine=engine)
