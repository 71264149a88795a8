"""
Dialect Helpers
===============

``INSERT ... ON CONFLICT`` lives in dialect-specific modules in
SQLAlchemy. Production runs on PostgreSQL, the test-suite on SQLite;
both expose the same ``on_conflict_do_nothing`` /
``on_conflict_do_update`` API.
"""

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(db: AsyncSession) -> str:
    """Name of the dialect the session is bound to."""
    return db.get_bind().dialect.name


def upsert_insert(db: AsyncSession, model: Any):
    """Return a conflict-aware ``insert()`` construct for the session's dialect."""
    if dialect_name(db) == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)
