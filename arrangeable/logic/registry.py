"""Table name -> OrderMaintenance lookup used by the HTTP layer."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator

from sqlalchemy.engine import Engine

from arrangeable.config import ArrangeableConfig
from arrangeable.logic.errors import UnknownTableError
from arrangeable.logic.order_maintenance import OrderMaintenance

logger = logging.getLogger(__name__)


class TableRegistry:
    def __init__(self, engine: Engine, configs: Iterable[ArrangeableConfig] = ()) -> None:
        self.engine = engine
        self._cores: Dict[str, OrderMaintenance] = {}
        for cfg in configs:
            self.register(cfg)

    def register(self, config: ArrangeableConfig) -> OrderMaintenance:
        core = OrderMaintenance(config, engine=self.engine)
        self._cores[config.table] = core
        logger.info(
            "table_registered table=%s grouped=%s start_order=%s",
            config.table,
            config.grouped,
            config.start_order,
        )
        return core

    def get(self, table: str) -> OrderMaintenance:
        try:
            return self._cores[table]
        except KeyError:
            raise UnknownTableError(table) from None

    def __contains__(self, table: object) -> bool:
        return table in self._cores

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._cores))


__all__ = ["TableRegistry"]
