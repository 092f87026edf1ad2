"""Dialect-aware helpers for statements that differ between Postgres and SQLite."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


async def insert_ignoring_conflicts(
    session: AsyncSession,
    model: Any,
    values: Mapping[str, Any],
    *,
    conflict_columns: Iterable[str],
) -> bool:
    """Insert a row unless it collides on ``conflict_columns``. Returns True when inserted."""

    dialect = session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def upsert_row(
    session: AsyncSession,
    model: Any,
    values: Mapping[str, Any],
    *,
    conflict_columns: Iterable[str],
    update_columns: Iterable[str],
    where: Callable[[Any], Any] | None = None,
) -> None:
    """Insert a row or overwrite ``update_columns`` on conflict.

    ``where`` receives the statement's ``excluded`` namespace and returns the condition
    the existing row must meet to be overwritten.
    """

    dialect = session.get_bind().dialect.name
    insert = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: stmt.excluded[column] for column in update_columns},
        where=where(stmt.excluded) if where is not None else None,
    )
    await session.execute(stmt)


__all__ = ["insert_ignoring_conflicts", "upsert_row"]
