"""PayPal checkout and webhook intake."""

import structlog
from fastapi import APIRouter, Depends, Request

from tablexport.schemas.paypal import (
    CaptureOrderRequest,
    CaptureOrderResponse,
    CreateOrderRequest,
    CreateOrderResponse,
)
from tablexport.core.auth import SessionUser, require_auth
from tablexport.core.config import get_settings
from tablexport.paypal.client import PayPalClient, get_paypal_client
from tablexport.services import checkout
from tablexport.services.notifications import NotificationDispatcher, get_notifier
from tablexport.webhooks.pipeline import WebhookPipeline, get_webhook_pipeline

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/paypal", tags=["paypal"])


@router.post("/create-order", response_model=CreateOrderResponse)
async def create_order(
    body: CreateOrderRequest,
    user: SessionUser = Depends(require_auth),
    paypal: PayPalClient = Depends(get_paypal_client),
):
    order_id = await checkout.create_order(paypal, body.plan_type)
    logger.info("checkout_order_created", user_id=user.user_id, order_id=order_id)
    return CreateOrderResponse(order_id=order_id)


@router.post("/capture-order", response_model=CaptureOrderResponse)
async def capture_order(
    body: CaptureOrderRequest,
    user: SessionUser = Depends(require_auth),
    paypal: PayPalClient = Depends(get_paypal_client),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    result = await checkout.capture_order(
        user,
        body.order_id,
        paypal=paypal,
        notifier=notifier,
        settings=get_settings(),
    )
    return CaptureOrderResponse(capture_id=result["captureID"], status=result["status"])


@router.post("/webhooks")
async def paypal_webhook(
    request: Request,
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
):
    """Receive a PayPal webhook delivery. Authenticated by its signature headers."""
    body = await request.body()
    result = await pipeline.ingest(body, request.headers)
    return result.to_response()
