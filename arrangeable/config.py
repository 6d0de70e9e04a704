"""Configuration for arrangeable tables and the hosting service.

Each ordered table carries its own ``ArrangeableConfig``; there is no global
per-model state. ``load_config`` assembles the service-level ``AppConfig``
with the following rules:
- Primary source: ``arrangeable_config.json`` at the project root, or the
  file named by ``ARRANGEABLE_CONFIG``.
- Overrides: environment variables, then optional text files under ``config/``.
- Validation: Pydantic models enforce required fields and value constraints.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import (
    BaseModel,
    Field,
    ValidationError as PydanticValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)


CONFIG_DIR = Path("config")
ROOT_CONFIG_FILE = Path("arrangeable_config.json")
logger = logging.getLogger(__name__)


def _read_config_file(rel_path: str) -> Optional[str]:
    path = CONFIG_DIR / rel_path
    try:
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        # Recoverable: log and ignore unreadable override
        logger.warning("Failed to read override %s: %s", path, e)
        return None
    return None


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


def _non_empty_identifier(v: Optional[str], field: str) -> Optional[str]:
    if v is None:
        return v
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{field} must be a non-empty string")
    return v.strip()


class ArrangeableConfig(BaseModel):
    """Ordering settings for one logical table.

    ``group_field`` set to None disables grouping: the whole table is then a
    single ordering sequence.
    """

    table: str
    primary_key: str = "id"
    position_field: str = "order"
    group_field: Optional[str] = None
    start_order: int = 0
    handle_create: bool = True
    handle_delete: bool = True

    @field_validator("table", "primary_key", "position_field")
    @classmethod
    def identifiers_must_be_non_empty(cls, v: str, info: ValidationInfo) -> str:
        return _non_empty_identifier(v, str(info.field_name))  # type: ignore[return-value]

    @field_validator("group_field")
    @classmethod
    def group_field_must_be_non_empty(cls, v: Optional[str]) -> Optional[str]:
        return _non_empty_identifier(v, "group_field")

    @model_validator(mode="after")
    def columns_must_differ(self) -> "ArrangeableConfig":
        columns = [self.primary_key, self.position_field]
        if self.group_field is not None:
            columns.append(self.group_field)
        if len(set(columns)) != len(columns):
            raise ValueError("primary_key, position_field and group_field must name distinct columns")
        return self

    @property
    def grouped(self) -> bool:
        return self.group_field is not None


class DatabaseConfig(BaseModel):
    dsn: str

    @field_validator("dsn")
    @classmethod
    def dsn_must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("database.dsn must be a non-empty string")
        return v


class AppConfig(BaseModel):
    database: DatabaseConfig
    tables: Dict[str, ArrangeableConfig] = Field(default_factory=dict)
    migrations_dir: Optional[str] = None
    auto_apply_migrations: bool = False


def _read_json_file(path: Path) -> dict:
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            return data if isinstance(data, dict) else {}
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("Failed to read JSON config %s: %s", path, e)
    return {}


def _tables_from_base(raw: object) -> Dict[str, dict]:
    """Normalise the ``tables`` section; the mapping key doubles as table name."""
    if not isinstance(raw, dict):
        return {}
    tables: Dict[str, dict] = {}
    for name, settings in raw.items():
        entry = dict(settings) if isinstance(settings, dict) else {}
        entry.setdefault("table", name)
        tables[str(name)] = entry
    return tables


def load_config(path: str | os.PathLike[str] | None = None) -> AppConfig:
    """Load configuration with validation.

    Precedence (highest first):
    1) Environment variables
    2) Text files in `config/` (optional)
    3) JSON config file (primary base)
    4) Safe defaults for development
    """

    config_path = Path(path) if path is not None else Path(_env("ARRANGEABLE_CONFIG") or ROOT_CONFIG_FILE)
    base = _read_json_file(config_path)

    def _base(dotted: str, default: Optional[str] = None) -> Optional[str]:
        cur: object = base
        for key in dotted.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return default
            cur = cur[key]
        return str(cur) if cur is not None else default

    dsn = (
        _env("DATABASE_URL")
        or _read_config_file("database.url")
        or _base("database.dsn")
        or "sqlite+pysqlite:///:memory:"
    )
    migrations_dir = (
        _env("ARRANGEABLE_MIGRATIONS_DIR")
        or _read_config_file("migrations.dir")
        or _base("migrations_dir")
    )
    auto_apply_text = (
        _env("AUTO_APPLY_MIGRATIONS")
        or _read_config_file("migrations.auto_apply")
        or _base("auto_apply_migrations", "false")
    )

    try:
        cfg = AppConfig(
            database=DatabaseConfig(dsn=dsn),
            tables=_tables_from_base(base.get("tables")),
            migrations_dir=migrations_dir,
            auto_apply_migrations=str(auto_apply_text).strip().lower() in {"1", "true", "yes"},
        )
    except PydanticValidationError as e:
        logger.error("Invalid application configuration: %s", e)
        raise
    logger.info(
        "config_loaded source=%s tables=%s",
        str(config_path),
        sorted(cfg.tables),
    )
    return cfg


__all__ = [
    "AppConfig",
    "ArrangeableConfig",
    "DatabaseConfig",
    "load_config",
]
