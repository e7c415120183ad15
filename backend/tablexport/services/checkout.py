"""PayPal checkout: create an order, capture it, grant Pro on completion."""

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablexport.core.auth import SessionUser
from tablexport.core.config import Settings
from tablexport.core.exceptions import InvalidRequest, PayPalAPIError, StorageError, UpstreamFailure
from tablexport.db.base import get_session_factory
from tablexport.db.models.payment import PAYMENT_COMPLETED, PAYMENT_PENDING, Payment
from tablexport.db.models.subscription import PLAN_PRO
from tablexport.paypal.client import PayPalClient
from tablexport.paypal.plans import format_amount, get_paid_plan, is_valid_order_id, parse_amount
from tablexport.services import notifications as kinds
from tablexport.services.notifications import NotificationDispatcher
from tablexport.services.subscription import activate_subscription_for_capture

logger = structlog.get_logger(__name__)


async def create_order(paypal: PayPalClient, plan_type: str | None) -> str:
    """Create a PayPal order for a paid plan and return its id."""
    plan = get_paid_plan(plan_type)
    if plan is None:
        raise InvalidRequest("Invalid plan type")

    try:
        order = await paypal.create_order(plan)
    except PayPalAPIError as exc:
        raise UpstreamFailure("Failed to create order") from exc
    return order["id"]


def _first_capture(capture: dict) -> dict:
    units = capture.get("purchase_units") or [{}]
    captures = (units[0].get("payments") or {}).get("captures") or [{}]
    return captures[0]


async def capture_order(
    user: SessionUser,
    order_id: str | None,
    *,
    paypal: PayPalClient,
    notifier: NotificationDispatcher,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict:
    """Capture an approved order and record the payment.

    Only a ``COMPLETED`` capture activates Pro here. A pending capture is
    stored as a pending payment; the ``PAYMENT.CAPTURE.COMPLETED`` webhook
    finishes it later.
    """
    if not order_id:
        raise InvalidRequest("Order ID is required")
    if not is_valid_order_id(order_id):
        raise InvalidRequest("Invalid order ID")

    try:
        capture = await paypal.capture_order(order_id)
    except PayPalAPIError as exc:
        raise UpstreamFailure("Failed to capture order") from exc

    status = capture.get("status")
    completed = status == "COMPLETED"
    captured = _first_capture(capture)
    capture_id = captured.get("id")
    amount_info = captured.get("amount") or {}
    amount = parse_amount(amount_info.get("value"))
    currency = amount_info.get("currency_code", "USD")

    factory = session_factory or get_session_factory()
    try:
        async with factory() as session:
            subscription = None
            if completed:
                subscription = await activate_subscription_for_capture(session, user.user_id, capture_id, settings)
                await session.flush()

            session.add(
                Payment(
                    user_id=user.user_id,
                    subscription_id=subscription.id if subscription is not None else None,
                    plan_type=PLAN_PRO,
                    amount=amount,
                    currency=currency,
                    status=PAYMENT_COMPLETED if completed else PAYMENT_PENDING,
                    provider="paypal",
                    provider_order_id=order_id,
                    provider_payment_id=capture_id,
                    provider_data=capture,
                )
            )
            await session.commit()
    except SQLAlchemyError as exc:
        logger.error("capture_persist_failed", order_id=order_id, user_id=user.user_id, error=str(exc))
        raise StorageError("Failed to capture order") from exc

    logger.info("order_captured", order_id=order_id, user_id=user.user_id, status=status)

    if completed:
        data = {
            "user_id": user.user_id,
            "user_email": user.email,
            "amount": format_amount(amount),
            "currency": currency,
            "plan_type": PLAN_PRO,
            "order_id": order_id,
            "payment_id": capture_id,
            "expires_at": subscription.current_period_end.date().isoformat() if subscription else None,
        }
        await notifier.send(kinds.PAYMENT_CONFIRMATION, user.email, data)
        await notifier.notify_admins(kinds.ADMIN_PAYMENT_SUCCESS, data)

    return {"success": True, "captureID": capture_id, "status": status}
