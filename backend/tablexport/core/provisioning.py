"""Record the auth provider's users locally on their first request.

Webhook handlers and the admin payment listing need a user's email while
only holding a user id, so every authenticated caller gets a
``user_profiles`` row. The insert is an upsert, safe under concurrent
first requests, and refreshes the email if it changed upstream.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from tablexport.db.base import get_session_factory, utcnow
from tablexport.db.models.user_profile import UserProfile
from tablexport.db.upsert import insert_for


async def provision_user_on_first_login(
    user_id: str,
    email: str | None,
    session: AsyncSession | None = None,
) -> None:
    """Create or refresh the ``user_profiles`` row for ``user_id``.

    Args:
        user_id: Auth provider user id (JWT ``sub``)
        email: Email claim, may be None for phone-only accounts
        session: Optional AsyncSession for testing
    """
    if session is not None:
        await _do_provision(user_id, email, session)
        return

    factory = get_session_factory()
    async with factory() as session:
        await _do_provision(user_id, email, session)


async def _do_provision(user_id: str, email: str | None, session: AsyncSession) -> None:
    now = utcnow()
    stmt = insert_for(session, UserProfile).values(
        id=user_id,
        email=email,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["id"],
        set_={"email": stmt.excluded.email, "updated_at": now},
    )
    await session.execute(stmt)
    await session.commit()


async def get_user_email(session: AsyncSession, user_id: str) -> str | None:
    profile = await session.get(UserProfile, user_id)
    return profile.email if profile else None
