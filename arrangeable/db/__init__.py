"""Database bootstrap utilities.

Convenience imports for engine construction and the SQL migrations runner.
The DB layer stays minimal and does not define ORM models.
"""

from arrangeable.db.base import build_engine, get_engine
from arrangeable.db.migrations_runner import apply_migrations

__all__ = [
    "build_engine",
    "get_engine",
    "apply_migrations",
]
