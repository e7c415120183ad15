"""Admin routes: payment listing and manual webhook reprocessing."""

from fastapi import APIRouter, Depends
from sqlalchemy import select

from tablexport.schemas.admin import PaymentListResponse, PaymentSummary, WebhookRetryResponse
from tablexport.core.auth import SessionUser, require_admin
from tablexport.db.base import as_utc, get_session_factory
from tablexport.db.models.payment import Payment
from tablexport.db.models.user_profile import UserProfile
from tablexport.webhooks.pipeline import WebhookPipeline, get_webhook_pipeline

router = APIRouter(prefix="/admin", tags=["admin"])

PAYMENTS_PAGE_SIZE = 100


@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(_: SessionUser = Depends(require_admin)):
    """Latest payments with the payer's email."""
    factory = get_session_factory()
    async with factory() as session:
        result = await session.execute(
            select(Payment, UserProfile.email)
            .outerjoin(UserProfile, UserProfile.id == Payment.user_id)
            .order_by(Payment.created_at.desc())
            .limit(PAYMENTS_PAGE_SIZE)
        )
        rows = result.all()

    return PaymentListResponse(
        payments=[
            PaymentSummary(
                id=payment.id,
                user_id=payment.user_id,
                user_email=email,
                plan_type=payment.plan_type,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status,
                provider=payment.provider,
                provider_order_id=payment.provider_order_id,
                provider_payment_id=payment.provider_payment_id,
                created_at=as_utc(payment.created_at),
            )
            for payment, email in rows
        ]
    )


@router.post("/webhooks/{event_id}/retry", response_model=WebhookRetryResponse)
async def retry_webhook(
    event_id: str,
    _: SessionUser = Depends(require_admin),
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
):
    """Dispatch a stored webhook event that never reached ``processed``."""
    result = await pipeline.reprocess(event_id)
    return WebhookRetryResponse(event_id=event_id, status=result.state, event_type=result.event_type)
