"""SQLAlchemy declarative base, engine and session factory."""

from datetime import UTC, datetime

from sqlalchemy import JSON, make_url
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tablexport.core.config import Settings, get_settings


class Base(DeclarativeBase):
    pass


# JSONB on PostgreSQL, plain JSON on SQLite.
JsonType = JSONB().with_variant(JSON(), "sqlite")


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def engine_options(db_url: str, settings: Settings) -> dict:
    """Pool options for ``create_async_engine``.

    SQLite runs on a single-connection or null pool that rejects sizing
    arguments, so only server databases get a sized, recycled pool.
    """
    if make_url(db_url).get_backend_name() == "sqlite":
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.database_pool_size,
        "pool_recycle": settings.database_pool_recycle_seconds,
    }


async def init_db(url: str | None = None) -> None:
    """Initialize the async engine and session factory.

    Creates any missing tables from ``Base.metadata``.
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    db_url = url or settings.database_url

    _engine = create_async_engine(db_url, echo=False, **engine_options(db_url, settings))
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    import tablexport.db.models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the configured session factory.

    Raises RuntimeError if init_db() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
