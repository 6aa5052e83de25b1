"""
INSERT ... ON CONFLICT helpers for the two supported dialects.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Upserts are not supported on dialect {dialect!r}")


def upsert(
    session: Session,
    model,
    *,
    conflict_columns: list[str],
    values: dict[str, Any],
    update_columns: list[str],
) -> None:
    """Insert *values* or, on a unique conflict, overwrite *update_columns*."""
    insert = _insert_for(session)
    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    session.execute(stmt)


def next_sequence_value(session: Session, model, **key: Any) -> int:
    """
    Atomically bump a ``last_value`` counter row identified by *key* and return
    the new value. The row lock taken by the upsert is held until commit.
    """
    insert = _insert_for(session)
    stmt = insert(model).values(**key, last_value=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(key),
        set_={"last_value": model.last_value + 1},
    )
    session.execute(stmt)
    return session.query(model.last_value).filter_by(**key).scalar()
