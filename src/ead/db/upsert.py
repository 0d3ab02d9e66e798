"""Dialect-aware INSERT ... ON CONFLICT support."""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, model: Any) -> Any:
    """Return an INSERT construct supporting ``on_conflict_do_nothing`` for the session's dialect.

    PostgreSQL is the production database; SQLite backs tests and local runs.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    msg = f"Unsupported database dialect: {dialect}"
    raise RuntimeError(msg)
