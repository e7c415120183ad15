"""Dialect-aware INSERT ... ON CONFLICT for PostgreSQL and SQLite."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_for(session: AsyncSession, table):
    """Return an ``insert()`` construct that supports ``on_conflict_do_*``."""
    dialect = session.get_bind().dialect.name
    try:
        return _INSERTS[dialect](table)
    except KeyError:
        raise RuntimeError(f"Upsert not supported for dialect {dialect!r}") from None
