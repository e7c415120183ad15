"""Tests for order creation and capture."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from tablexport.core.auth import SessionUser
from tablexport.core.exceptions import InvalidRequest, PayPalAPIError, StorageError, UpstreamFailure
from tablexport.db.models.payment import PAYMENT_COMPLETED, PAYMENT_PENDING, Payment
from tablexport.db.models.subscription import STATUS_ACTIVE, Subscription
from tablexport.services import checkout
from tablexport.services import notifications as kinds

pytestmark = pytest.mark.integration

ORDER_ID = "5O190127TN364715T"
USER = SessionUser(user_id="user-1", email="user@example.com")


def _capture_response(status: str = "COMPLETED", capture_id: str = "CAP-1") -> dict:
    return {
        "id": ORDER_ID,
        "status": status,
        "purchase_units": [
            {
                "payments": {
                    "captures": [
                        {"id": capture_id, "status": status, "amount": {"currency_code": "USD", "value": "5.00"}}
                    ]
                }
            }
        ],
    }


@pytest.fixture
def paypal():
    client = MagicMock()
    client.create_order = AsyncMock(return_value={"id": ORDER_ID, "status": "CREATED"})
    client.capture_order = AsyncMock(return_value=_capture_response())
    return client


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send = AsyncMock()
    mock.notify_admins = AsyncMock()
    return mock


class TestCreateOrder:
    async def test_returns_order_id(self, paypal):
        assert await checkout.create_order(paypal, "pro") == ORDER_ID

    @pytest.mark.parametrize("plan_type", ["free", "gold", None])
    async def test_rejects_unpaid_or_unknown_plan(self, paypal, plan_type):
        with pytest.raises(InvalidRequest, match="Invalid plan type"):
            await checkout.create_order(paypal, plan_type)

        paypal.create_order.assert_not_awaited()

    async def test_provider_failure_is_upstream_error(self, paypal):
        paypal.create_order.side_effect = PayPalAPIError("boom", status=503)

        with pytest.raises(UpstreamFailure, match="Failed to create order"):
            await checkout.create_order(paypal, "pro")


class TestCaptureOrder:
    async def test_completed_capture_activates_pro(self, paypal, notifier, settings, session_factory):
        result = await checkout.capture_order(
            USER, ORDER_ID, paypal=paypal, notifier=notifier, settings=settings, session_factory=session_factory
        )

        assert result == {"success": True, "captureID": "CAP-1", "status": "COMPLETED"}
        async with session_factory() as session:
            sub = (await session.execute(select(Subscription))).scalar_one()
            payment = (await session.execute(select(Payment))).scalar_one()
        assert sub.user_id == "user-1"
        assert sub.status == STATUS_ACTIVE
        assert sub.provider_subscription_id == "CAP-1"
        assert payment.status == PAYMENT_COMPLETED
        assert payment.amount == 5.0
        assert payment.subscription_id == sub.id
        assert payment.provider_order_id == ORDER_ID

    async def test_completed_capture_notifies_user_and_admins(self, paypal, notifier, settings, session_factory):
        await checkout.capture_order(
            USER, ORDER_ID, paypal=paypal, notifier=notifier, settings=settings, session_factory=session_factory
        )

        kind, recipient, data = notifier.send.await_args.args
        assert kind == kinds.PAYMENT_CONFIRMATION
        assert recipient == "user@example.com"
        assert data["amount"] == "5.00"
        notifier.notify_admins.assert_awaited_once()
        assert notifier.notify_admins.await_args.args[0] == kinds.ADMIN_PAYMENT_SUCCESS

    async def test_pending_capture_records_pending_payment_only(self, paypal, notifier, settings, session_factory):
        paypal.capture_order.return_value = _capture_response(status="PENDING")

        result = await checkout.capture_order(
            USER, ORDER_ID, paypal=paypal, notifier=notifier, settings=settings, session_factory=session_factory
        )

        assert result["status"] == "PENDING"
        async with session_factory() as session:
            assert (await session.execute(select(Subscription))).scalar_one_or_none() is None
            payment = (await session.execute(select(Payment))).scalar_one()
        assert payment.status == PAYMENT_PENDING
        notifier.send.assert_not_awaited()

    @pytest.mark.parametrize(("order_id", "message"), [(None, "Order ID is required"), ("bad-id", "Invalid order ID")])
    async def test_invalid_order_id(self, paypal, notifier, settings, order_id, message):
        with pytest.raises(InvalidRequest, match=message):
            await checkout.capture_order(USER, order_id, paypal=paypal, notifier=notifier, settings=settings)

        paypal.capture_order.assert_not_awaited()

    async def test_provider_failure_stores_nothing(self, paypal, notifier, settings, session_factory):
        paypal.capture_order.side_effect = PayPalAPIError("declined", status=422)

        with pytest.raises(UpstreamFailure, match="Failed to capture order"):
            await checkout.capture_order(
                USER, ORDER_ID, paypal=paypal, notifier=notifier, settings=settings, session_factory=session_factory
            )

        async with session_factory() as session:
            assert (await session.execute(select(Payment))).scalar_one_or_none() is None

    async def test_storage_failure_raises_storage_error(self, paypal, notifier, settings):
        broken = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))

        with pytest.raises(StorageError):
            await checkout.capture_order(
                USER, ORDER_ID, paypal=paypal, notifier=notifier, settings=settings, session_factory=broken
            )

        notifier.send.assert_not_awaited()
