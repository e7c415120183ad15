"""Entitlement resolution and subscription state changes.

``SubscriptionResolver.resolve`` turns the stored subscription row plus
today's export count into an ``Entitlement``. It never raises on storage
errors: a failed read yields the degraded default (free tier, zero usage)
so a database hiccup cannot lock users out of the extension.

The mutation helpers below are shared by the capture flow and the PayPal
webhook handlers. Webhook-driven changes carry the provider event time and
are skipped when older than the last event already applied to the row.
"""

import calendar
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from fastapi import Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablexport.core.config import Settings, get_settings
from tablexport.db.base import as_utc, get_session_factory
from tablexport.db.models.subscription import (
    PLAN_FREE,
    PLAN_PRO,
    STATUS_ACTIVE,
    Subscription,
)
from tablexport.services.usage import count_for_day, usage_date

logger = structlog.get_logger(__name__)

UNLIMITED = -1

ENTITLEMENT_FREE = "free"
ENTITLEMENT_PRO = "pro"
ENTITLEMENT_EXPIRED = "expired"
ENTITLEMENT_CANCELLED = "cancelled"

EXPORT_STANDARD = "standard"
EXPORT_GOOGLE_SHEETS = "google_sheets"

SOURCE_RESOLVED = "resolved"
SOURCE_DEGRADED = "degraded_default"

REASON_SHEETS_REQUIRES_PRO = "Google Sheets export requires Pro subscription"
REASON_DAILY_LIMIT = "Daily export limit reached. Upgrade to Pro for unlimited exports."
REASON_EXPIRED = "Subscription expired. Please renew your Pro subscription."


@dataclass(frozen=True)
class Entitlement:
    status: str
    plan_type: str | None
    expires_at: datetime | None
    daily_limit: int
    used_today: int
    can_export_google_sheets: bool = False
    can_export_to_google_drive: bool = False
    source: str = SOURCE_RESOLVED

    @property
    def is_pro(self) -> bool:
        return self.status == ENTITLEMENT_PRO

    @property
    def is_unlimited(self) -> bool:
        return self.daily_limit == UNLIMITED

    @property
    def remaining_exports(self) -> int:
        if self.is_unlimited:
            return UNLIMITED
        return max(0, self.daily_limit - self.used_today)

    @property
    def limit_reached(self) -> bool:
        return not self.is_unlimited and self.used_today >= self.daily_limit


@dataclass(frozen=True)
class ExportCheck:
    can_export: bool
    reason: str | None
    remaining_exports: int


def degraded_default(settings: Settings | None = None) -> Entitlement:
    """Entitlement used when storage could not be read."""
    settings = settings or get_settings()
    return Entitlement(
        status=ENTITLEMENT_FREE,
        plan_type=PLAN_FREE,
        expires_at=None,
        daily_limit=settings.free_daily_limit,
        used_today=0,
        source=SOURCE_DEGRADED,
    )


def build_entitlement(
    subscription: Subscription | None,
    used_today: int,
    now: datetime,
    free_daily_limit: int,
) -> Entitlement:
    """Derive the entitlement from an active subscription row (or none).

    Pro holds only while ``current_period_end`` is strictly in the future.
    An active row past its period end reads as expired with free-tier quota,
    even before any status update has been stored.
    """
    if subscription is None:
        return Entitlement(
            status=ENTITLEMENT_FREE,
            plan_type=PLAN_FREE,
            expires_at=None,
            daily_limit=free_daily_limit,
            used_today=used_today,
        )

    period_end = as_utc(subscription.current_period_end)
    if period_end is not None and period_end > now:
        return Entitlement(
            status=ENTITLEMENT_PRO,
            plan_type=subscription.plan_type,
            expires_at=period_end,
            daily_limit=UNLIMITED,
            used_today=used_today,
            can_export_google_sheets=True,
            can_export_to_google_drive=True,
        )

    return Entitlement(
        status=ENTITLEMENT_EXPIRED,
        plan_type=subscription.plan_type,
        expires_at=period_end,
        daily_limit=free_daily_limit,
        used_today=used_today,
    )


def can_user_export(entitlement: Entitlement, export_type: str = EXPORT_STANDARD) -> ExportCheck:
    """Decide whether one more export of ``export_type`` is allowed.

    Expired and cancelled users keep the free-tier quota; once they hit it the
    reason asks them to renew rather than upgrade.
    """
    if export_type == EXPORT_GOOGLE_SHEETS and not entitlement.can_export_google_sheets:
        return ExportCheck(False, REASON_SHEETS_REQUIRES_PRO, entitlement.remaining_exports)

    if entitlement.is_pro:
        return ExportCheck(True, None, UNLIMITED)

    if not entitlement.limit_reached:
        return ExportCheck(True, None, entitlement.remaining_exports)

    if entitlement.status == ENTITLEMENT_FREE:
        return ExportCheck(False, REASON_DAILY_LIMIT, 0)
    return ExportCheck(False, REASON_EXPIRED, 0)


class SubscriptionResolver:
    """Reads a user's entitlement from the subscriptions and daily_limits tables."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    async def resolve(self, user_id: str, now: datetime | None = None) -> Entitlement:
        now = now or datetime.now(UTC)
        try:
            factory = self._session_factory or get_session_factory()
            async with factory() as session:
                result = await session.execute(
                    select(Subscription)
                    .where(
                        Subscription.user_id == user_id,
                        Subscription.status == STATUS_ACTIVE,
                    )
                    .limit(1)
                )
                subscription = result.scalar_one_or_none()
                used_today = await count_for_day(session, user_id, usage_date(now))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "entitlement_degraded_default",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return degraded_default(self.settings)

        return build_entitlement(subscription, used_today, now, self.settings.free_daily_limit)

    async def check_export(self, user_id: str, export_type: str = EXPORT_STANDARD) -> tuple[Entitlement, ExportCheck]:
        entitlement = await self.resolve(user_id)
        return entitlement, can_user_export(entitlement, export_type)


# ── Mutations ───────────────────────────────────────────────────────


def _is_stale(subscription: Subscription, event_time: datetime | None) -> bool:
    if event_time is None or subscription.last_event_at is None:
        return False
    return as_utc(event_time) < as_utc(subscription.last_event_at)


async def get_subscription_for_user(session: AsyncSession, user_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


def add_one_month(value: datetime) -> datetime:
    """Same day next month, clamped to the last day of a shorter month."""
    year, month = (value.year + 1, 1) if value.month == 12 else (value.year, value.month + 1)
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


async def create_or_update_subscription(
    session: AsyncSession,
    user_id: str,
    *,
    provider_subscription_id: str | None,
    plan_type: str = PLAN_PRO,
    status: str = STATUS_ACTIVE,
    period_days: int | None = None,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription | None:
    """Create or refresh the user's subscription row with a new period.

    The period starts at ``now`` and lasts ``period_days``, or one calendar
    month when not given (recurring PayPal subscriptions). Returns None and
    changes nothing when ``event_time`` is older than the last event applied
    to the row. The caller commits.
    """
    now = now or datetime.now(UTC)
    subscription = await get_subscription_for_user(session, user_id)

    if subscription is None:
        subscription = Subscription(user_id=user_id)
        session.add(subscription)
    elif _is_stale(subscription, event_time):
        logger.info(
            "subscription_event_stale",
            user_id=user_id,
            event_time=event_time.isoformat(),
            last_event_at=as_utc(subscription.last_event_at).isoformat(),
        )
        return None

    subscription.plan_type = plan_type
    subscription.status = status
    subscription.provider_subscription_id = provider_subscription_id
    subscription.current_period_start = now
    subscription.current_period_end = now + timedelta(days=period_days) if period_days else add_one_month(now)
    subscription.cancel_at_period_end = False
    subscription.last_event_at = event_time or now

    logger.info(
        "subscription_period_started",
        user_id=user_id,
        plan_type=plan_type,
        status=status,
        period_end=subscription.current_period_end.isoformat(),
    )
    return subscription


async def activate_subscription_for_capture(
    session: AsyncSession,
    user_id: str,
    capture_id: str | None,
    settings: Settings,
    *,
    plan_type: str = PLAN_PRO,
    event_time: datetime | None = None,
    now: datetime | None = None,
) -> Subscription | None:
    """Grant ``plan_type`` for ``settings.pro_period_days`` after a completed one-off capture."""
    return await create_or_update_subscription(
        session,
        user_id,
        provider_subscription_id=capture_id,
        plan_type=plan_type,
        period_days=settings.pro_period_days,
        event_time=event_time,
        now=now,
    )


async def set_subscription_status(
    session: AsyncSession,
    status: str,
    *,
    provider_subscription_id: str | None = None,
    user_id: str | None = None,
    event_time: datetime | None = None,
) -> Subscription | None:
    """Move a subscription to ``status``, looked up by provider id or user id.

    Returns the row when the change was applied, None when no row matched or
    the event is stale. The caller commits.
    """
    if provider_subscription_id:
        stmt = select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
    elif user_id:
        stmt = select(Subscription).where(Subscription.user_id == user_id)
    else:
        raise ValueError("provider_subscription_id or user_id is required")

    subscription = (await session.execute(stmt.limit(1))).scalar_one_or_none()
    if subscription is None:
        logger.warning(
            "subscription_not_found",
            provider_subscription_id=provider_subscription_id,
            user_id=user_id,
            status=status,
        )
        return None

    if _is_stale(subscription, event_time):
        logger.info(
            "subscription_event_stale",
            subscription_id=subscription.id,
            status=status,
            event_time=event_time.isoformat(),
        )
        return None

    subscription.status = status
    subscription.last_event_at = event_time or datetime.now(UTC)
    logger.info("subscription_status_updated", subscription_id=subscription.id, status=status)
    return subscription


def get_resolver(request: Request) -> SubscriptionResolver:
    resolver = getattr(request.app.state, "resolver", None)
    if resolver is None:
        resolver = SubscriptionResolver()
        request.app.state.resolver = resolver
    return resolver
