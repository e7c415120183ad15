"""Subscription model: one row per user, driven by captures and webhooks."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String

from tablexport.db.base import Base, utcnow

PLAN_FREE = "free"
PLAN_PRO = "pro"

STATUS_ACTIVE = "active"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_PAST_DUE = "past_due"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, unique=True, index=True)

    plan_type = Column(String(20), nullable=False, default=PLAN_FREE)
    status = Column(String(20), nullable=False, default=STATUS_ACTIVE, index=True)

    # PayPal subscription id, or the capture id for one-off payments
    provider_subscription_id = Column(String(255), nullable=True, index=True)
    provider_plan_id = Column(String(255), nullable=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # create_time of the newest provider event applied to this row
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
