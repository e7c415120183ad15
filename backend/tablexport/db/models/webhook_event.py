"""PayPal webhook records: the idempotency ledger and its error log."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from tablexport.db.base import Base, JsonType, utcnow


class PayPalWebhookEvent(Base):
    """One row per provider event id. Never deleted."""

    __tablename__ = "paypal_webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False)
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True)
    data = Column(JsonType, nullable=False)

    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WebhookError(Base):
    __tablename__ = "webhook_errors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False, index=True)
    error_type = Column(String(20), nullable=False)  # validation | processing | database | network
    error_message = Column(Text, nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
