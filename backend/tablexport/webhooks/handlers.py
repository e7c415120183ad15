"""Per-event-type domain mutations for PayPal webhooks.

Handlers run inside a session owned by the pipeline and never commit
themselves. They return a ``HandlerOutcome``: whether the event counts as
processed, plus the emails to send once the mutation is committed.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tablexport.core.config import Settings
from tablexport.core.provisioning import get_user_email
from tablexport.db.base import as_utc
from tablexport.db.models.payment import PAYMENT_COMPLETED, PAYMENT_FAILED, Payment
from tablexport.db.models.subscription import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PAST_DUE,
    Subscription,
)
from tablexport.paypal.plans import format_amount, parse_amount
from tablexport.services import notifications as kinds
from tablexport.services.subscription import (
    activate_subscription_for_capture,
    create_or_update_subscription,
    get_subscription_for_user,
    set_subscription_status,
)
from tablexport.webhooks import events as ev

logger = structlog.get_logger(__name__)


@dataclass
class Notification:
    kind: str
    data: dict[str, Any]
    recipient: str | None = None
    to_admins: bool = False


@dataclass
class HandlerOutcome:
    processed: bool
    notifications: list[Notification] = field(default_factory=list)


async def _payment_for_order(session: AsyncSession, order_id: str | None) -> Payment | None:
    if not order_id:
        return None
    result = await session.execute(
        select(Payment)
        .where(Payment.provider_order_id == order_id)
        .order_by(Payment.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _already_active_for(subscription: Subscription | None, capture_id: str | None, now: datetime) -> bool:
    """True when the capture-order call already activated this capture."""
    if subscription is None or capture_id is None:
        return False
    period_end = as_utc(subscription.current_period_end)
    return (
        subscription.status == STATUS_ACTIVE
        and subscription.provider_subscription_id == capture_id
        and period_end is not None
        and period_end > now
    )


async def handle_capture_completed(session: AsyncSession, event: ev.CaptureEvent, settings: Settings) -> HandlerOutcome:
    resource = event.resource
    payment = await _payment_for_order(session, resource.order_id)
    if payment is None:
        logger.warning("webhook_payment_not_found", event_id=event.id, order_id=resource.order_id)
        return HandlerOutcome(processed=False)

    payment.status = PAYMENT_COMPLETED
    payment.provider_payment_id = resource.id
    if resource.amount is not None:
        payment.amount = parse_amount(resource.amount.value)
        payment.currency = resource.amount.currency_code

    now = datetime.now(UTC)
    subscription = await get_subscription_for_user(session, payment.user_id)
    if not _already_active_for(subscription, resource.id, now):
        subscription = await activate_subscription_for_capture(
            session,
            payment.user_id,
            resource.id,
            settings,
            plan_type=payment.plan_type,
            event_time=event.create_time,
            now=now,
        ) or subscription
    if subscription is not None:
        await session.flush()
        payment.subscription_id = subscription.id

    email = await get_user_email(session, payment.user_id)
    data = {
        "user_id": payment.user_id,
        "user_email": email,
        "amount": format_amount(payment.amount),
        "currency": payment.currency,
        "plan_type": payment.plan_type,
        "order_id": payment.provider_order_id,
        "payment_id": resource.id,
        "expires_at": (
            as_utc(subscription.current_period_end).date().isoformat()
            if subscription is not None and subscription.current_period_end
            else None
        ),
    }
    logger.info("webhook_capture_completed", user_id=payment.user_id, order_id=payment.provider_order_id)
    return HandlerOutcome(
        processed=True,
        notifications=[
            Notification(kinds.PAYMENT_CONFIRMATION, data, recipient=email),
            Notification(kinds.ADMIN_PAYMENT_SUCCESS, data, to_admins=True),
        ],
    )


async def handle_capture_failed(session: AsyncSession, event: ev.CaptureEvent, settings: Settings) -> HandlerOutcome:
    resource = event.resource
    payment = await _payment_for_order(session, resource.order_id)
    if payment is None:
        logger.warning("webhook_payment_not_found", event_id=event.id, order_id=resource.order_id)
        return HandlerOutcome(processed=False)

    payment.status = PAYMENT_FAILED
    payment.provider_payment_id = resource.id

    email = await get_user_email(session, payment.user_id)
    data = {
        "user_id": payment.user_id,
        "user_email": email,
        "amount": format_amount(payment.amount),
        "currency": payment.currency,
        "order_id": payment.provider_order_id,
        "event_type": event.event_type,
        "reason": event.summary,
    }
    logger.info("webhook_capture_failed", user_id=payment.user_id, event_type=event.event_type)
    return HandlerOutcome(
        processed=True,
        notifications=[
            Notification(kinds.PAYMENT_FAILED, data, recipient=email),
            Notification(kinds.ADMIN_PAYMENT_FAILED, data, to_admins=True),
        ],
    )


async def handle_subscription_created(
    session: AsyncSession, event: ev.SubscriptionEvent, settings: Settings
) -> HandlerOutcome:
    logger.info("webhook_subscription_created", subscription_id=event.resource.id)
    return HandlerOutcome(processed=True)


async def handle_subscription_activated(
    session: AsyncSession, event: ev.SubscriptionEvent, settings: Settings
) -> HandlerOutcome:
    """Start a new monthly period for a known recurring subscription."""
    existing = (
        await session.execute(
            select(Subscription).where(Subscription.provider_subscription_id == event.resource.id).limit(1)
        )
    ).scalar_one_or_none()
    if existing is None:
        logger.warning("webhook_subscription_unknown", event_id=event.id, subscription_id=event.resource.id)
        return HandlerOutcome(processed=True)

    subscription = await create_or_update_subscription(
        session,
        existing.user_id,
        provider_subscription_id=event.resource.id,
        event_time=event.create_time,
    )
    if subscription is None:
        return HandlerOutcome(processed=True)

    email = await get_user_email(session, subscription.user_id)
    period_end = as_utc(subscription.current_period_end)
    data = {
        "user_id": subscription.user_id,
        "expires_at": period_end.date().isoformat() if period_end else None,
    }
    return HandlerOutcome(
        processed=True,
        notifications=[Notification(kinds.SUBSCRIPTION_ACTIVATED, data, recipient=email)],
    )


def _status_handler(status: str):
    async def handle(session: AsyncSession, event: ev.SubscriptionEvent, settings: Settings) -> HandlerOutcome:
        await set_subscription_status(
            session,
            status,
            provider_subscription_id=event.resource.id,
            event_time=event.create_time,
        )
        return HandlerOutcome(processed=True)

    handle.__name__ = f"handle_subscription_{status}"
    return handle


async def handle_subscription_payment_failed(
    session: AsyncSession, event: ev.SubscriptionEvent, settings: Settings
) -> HandlerOutcome:
    resource = event.resource
    subscription = await set_subscription_status(
        session,
        STATUS_PAST_DUE,
        provider_subscription_id=resource.id,
        event_time=event.create_time,
    )

    last_payment = resource.billing_info.last_payment if resource.billing_info else None
    amount = last_payment.amount if last_payment and last_payment.amount else None
    user_id = subscription.user_id if subscription is not None else None
    data = {
        "user_id": user_id,
        "user_email": await get_user_email(session, user_id) if user_id else None,
        "amount": format_amount(parse_amount(amount.value)) if amount else format_amount(0),
        "currency": amount.currency_code if amount else "USD",
        "event_type": event.event_type,
        "reason": event.summary or "Subscription payment failed",
        "last_payment_at": last_payment.time.isoformat() if last_payment and last_payment.time else None,
    }
    logger.info("webhook_subscription_payment_failed", subscription_id=resource.id, user_id=user_id)
    return HandlerOutcome(
        processed=True,
        notifications=[Notification(kinds.ADMIN_PAYMENT_FAILED, data, to_admins=True)],
    )


HANDLERS = {
    ev.CAPTURE_COMPLETED: handle_capture_completed,
    ev.CAPTURE_DENIED: handle_capture_failed,
    ev.CAPTURE_DECLINED: handle_capture_failed,
    ev.SUBSCRIPTION_CREATED: handle_subscription_created,
    ev.SUBSCRIPTION_ACTIVATED: handle_subscription_activated,
    ev.SUBSCRIPTION_CANCELLED: _status_handler(STATUS_CANCELLED),
    ev.SUBSCRIPTION_SUSPENDED: _status_handler(STATUS_CANCELLED),
    ev.SUBSCRIPTION_EXPIRED: _status_handler(STATUS_EXPIRED),
    ev.SUBSCRIPTION_PAYMENT_FAILED: handle_subscription_payment_failed,
}
