# backend/app/db/repository.py
"""
Natural-key write helpers shared by the webhook processors.

Every provider-sourced row (calls, threads, messages, subscriptions,
payments, ledger entries) is written with a single INSERT ... ON CONFLICT
statement on its natural key, so repeated or out-of-order deliveries
converge on one row. Nothing here commits; callers own the transaction.
"""
import logging
from typing import Any, Dict, Optional, Sequence, Type

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert_for(db: AsyncSession, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect}")


async def insert_or_ignore(
    db: AsyncSession,
    model: Type,
    values: Dict[str, Any],
    conflict_columns: Sequence[str]
) -> bool:
    """Insert a row unless one with the same natural key exists.

    Returns True iff this call inserted the row.
    """
    stmt = (
        _insert_for(db, model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
        .returning(*[getattr(model, c) for c in conflict_columns])
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def upsert_by_natural_key(
    db: AsyncSession,
    model: Type,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Optional[Sequence[str]] = None
) -> Any:
    """Insert or update a row identified by ``conflict_columns``; returns its id.

    ``update_columns`` lists the columns overwritten on conflict. ``None``
    means every supplied column except the conflict columns; an empty list
    leaves an existing row untouched.
    """
    if update_columns is None:
        update_columns = [c for c in values if c not in conflict_columns]

    insert_stmt = _insert_for(db, model).values(**values)
    if update_columns:
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={c: insert_stmt.excluded[c] for c in update_columns}
        ).returning(model.id)
        result = await db.execute(stmt)
        return result.scalar_one()

    stmt = insert_stmt.on_conflict_do_nothing(
        index_elements=list(conflict_columns)
    ).returning(model.id)
    result = await db.execute(stmt)
    row_id = result.scalar_one_or_none()
    if row_id is not None:
        return row_id

    # Row already existed; read its id back by the natural key
    query = select(model.id)
    for column in conflict_columns:
        query = query.where(getattr(model, column) == values[column])
    result = await db.execute(query)
    return result.scalar_one()
