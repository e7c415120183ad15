"""Admin API schemas."""

from datetime import datetime

from pydantic import BaseModel


class PaymentSummary(BaseModel):
    id: str
    user_id: str
    user_email: str | None
    plan_type: str
    amount: float
    currency: str
    status: str
    provider: str
    provider_order_id: str | None
    provider_payment_id: str | None
    created_at: datetime


class PaymentListResponse(BaseModel):
    payments: list[PaymentSummary]


class WebhookRetryResponse(BaseModel):
    event_id: str
    status: str
    event_type: str | None = None
