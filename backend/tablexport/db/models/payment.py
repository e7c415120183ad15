"""Payment model: one row per captured PayPal order."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, String

from tablexport.db.base import Base, JsonType, utcnow

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True)

    plan_type = Column(String(20), nullable=False, default="pro")
    amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default=PAYMENT_PENDING)

    provider = Column(String(20), nullable=False, default="paypal")
    provider_order_id = Column(String(255), nullable=True, index=True)
    provider_payment_id = Column(String(255), nullable=True)
    provider_data = Column(JsonType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
