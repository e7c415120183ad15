"""Per-user daily export counter with midnight UTC rollover."""

from datetime import UTC, date, datetime

import structlog
from fastapi import Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablexport.db.base import get_session_factory
from tablexport.db.models.daily_usage import DailyUsage
from tablexport.db.upsert import insert_for

logger = structlog.get_logger(__name__)


def usage_date(now: datetime | None = None) -> date:
    """The counter's calendar day: the UTC date of ``now``."""
    now = now or datetime.now(UTC)
    return now.astimezone(UTC).date()


async def count_for_day(session: AsyncSession, user_id: str, day: date) -> int:
    result = await session.execute(
        select(DailyUsage.exports_count).where(
            DailyUsage.user_id == user_id,
            DailyUsage.date == day,
        )
    )
    return result.scalar_one_or_none() or 0


class UsageCounter:
    """Counts exports per (user, day) in the ``daily_limits`` table.

    Rows are created lazily on the first export of a day and never deleted;
    the date in the key is what resets the counter.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def increment(self, user_id: str, now: datetime | None = None) -> bool:
        """Add one export to today's counter.

        A single ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent exports
        never lose an increment.

        Returns:
            True when the increment was stored, False on any storage error.
        """
        now = now or datetime.now(UTC)
        day = usage_date(now)
        try:
            async with self.session_factory() as session:
                stmt = insert_for(session, DailyUsage).values(
                    user_id=user_id,
                    date=day,
                    exports_count=1,
                    created_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "date"],
                    set_={
                        "exports_count": DailyUsage.exports_count + 1,
                        "updated_at": now,
                    },
                )
                await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("usage_increment_failed", user_id=user_id, date=day.isoformat(), error=str(exc))
            return False
        return True

    async def get_today(self, user_id: str, now: datetime | None = None) -> int:
        """Exports recorded for ``user_id`` today (0 if none)."""
        async with self.session_factory() as session:
            return await count_for_day(session, user_id, usage_date(now))


def get_usage_counter(request: Request) -> UsageCounter:
    counter = getattr(request.app.state, "usage_counter", None)
    if counter is None:
        counter = UsageCounter()
        request.app.state.usage_counter = counter
    return counter
