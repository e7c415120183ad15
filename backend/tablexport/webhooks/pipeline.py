"""Idempotent ingestion of PayPal webhook deliveries.

A delivery moves through received -> validated -> deduplicated ->
dispatched -> processed. It ends early as rejected (bad payload or
signature, nothing stored) or already_processed (event id seen and
finished before).

The ``paypal_webhooks`` row is written before dispatch, so a crash mid-way
leaves a visible ``processed=false`` record. A redelivery of such an event
is dispatched again; once ``processed=true`` is stored, redeliveries are
no-ops.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx
import structlog
from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablexport.core.config import Settings, get_settings
from tablexport.core.exceptions import NotFound, StorageError, ValidationFailed
from tablexport.db.base import get_session_factory
from tablexport.db.models.webhook_event import PayPalWebhookEvent, WebhookError
from tablexport.paypal.client import PayPalClient, get_paypal_client
from tablexport.services.notifications import NotificationDispatcher, get_notifier
from tablexport.webhooks.events import parse_event
from tablexport.webhooks.handlers import HANDLERS, HandlerOutcome

logger = structlog.get_logger(__name__)

STATE_PROCESSED = "processed"
STATE_ALREADY_PROCESSED = "already_processed"
STATE_FAILED = "failed"

MAX_RETRIES = 3
RETRY_DELAYS = (
    timedelta(seconds=1),
    timedelta(seconds=5),
    timedelta(seconds=15),
)


@dataclass(frozen=True)
class IngestResult:
    state: str
    event_type: str | None = None

    def to_response(self) -> dict:
        if self.state == STATE_ALREADY_PROCESSED:
            return {"received": True, "status": STATE_ALREADY_PROCESSED}
        return {
            "received": True,
            "processed": self.state == STATE_PROCESSED,
            "event_type": self.event_type,
        }


def _error_type(exc: BaseException) -> str:
    if isinstance(exc, SQLAlchemyError):
        return "database"
    if isinstance(exc, httpx.HTTPError):
        return "network"
    return "processing"


class WebhookPipeline:
    def __init__(
        self,
        paypal: PayPalClient,
        notifier: NotificationDispatcher,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.paypal = paypal
        self.notifier = notifier
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def ingest(self, body: bytes, headers: Mapping[str, str]) -> IngestResult:
        try:
            payload = json.loads(body)
            event = parse_event(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning("webhook_rejected", reason="malformed_payload", error=str(exc)[:200])
            raise ValidationFailed("Invalid webhook payload")

        log = logger.bind(event_id=event.id, event_type=event.event_type)

        if not await self.paypal.verify_webhook_signature(headers, payload):
            log.warning("webhook_rejected", reason="invalid_signature")
            raise ValidationFailed("Invalid webhook signature")

        claimed = await self._claim(event, payload)
        if not claimed:
            log.info("webhook_duplicate_ignored")
            return IngestResult(STATE_ALREADY_PROCESSED, event.event_type)

        log.info("webhook_received")
        return await self._dispatch(event)

    async def reprocess(self, event_id: str) -> IngestResult:
        """Dispatch a stored, unprocessed event again (admin retry)."""
        async with self.session_factory() as session:
            record = (
                await session.execute(select(PayPalWebhookEvent).where(PayPalWebhookEvent.event_id == event_id))
            ).scalar_one_or_none()
        if record is None:
            raise NotFound("Webhook event not found")
        if record.processed:
            return IngestResult(STATE_ALREADY_PROCESSED, record.event_type)

        logger.info("webhook_reprocess", event_id=event_id, event_type=record.event_type)
        return await self._dispatch(parse_event(record.data))

    async def _claim(self, event, payload: dict) -> bool:
        """Store the event record. False when it was already processed.

        A stored record that never reached ``processed=true`` is claimed
        again so the redelivery can finish it.
        """
        try:
            async with self.session_factory() as session:
                existing = (
                    await session.execute(
                        select(PayPalWebhookEvent.processed).where(PayPalWebhookEvent.event_id == event.id)
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    if existing:
                        return False
                    logger.info("webhook_retrying_unprocessed", event_id=event.id)
                    return True

                session.add(
                    PayPalWebhookEvent(
                        event_id=event.id,
                        event_type=event.event_type,
                        resource_type=event.resource_type,
                        resource_id=event.resource_id,
                        data=payload,
                        processed=False,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
        except SQLAlchemyError as exc:
            logger.error("webhook_persist_failed", event_id=event.id, error=str(exc))
            raise StorageError("Failed to record webhook") from exc
        return True

    async def _dispatch(self, event) -> IngestResult:
        handler = HANDLERS.get(event.event_type)
        error: BaseException | None = None

        if handler is None:
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.event_type)
            outcome = HandlerOutcome(processed=True)
        else:
            try:
                async with self.session_factory() as session:
                    outcome = await handler(session, event, self.settings)
                    if outcome.processed:
                        await session.commit()
                    else:
                        await session.rollback()
            except Exception as exc:
                logger.error(
                    "webhook_handler_failed",
                    event_id=event.id,
                    event_type=event.event_type,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                error = exc
                outcome = HandlerOutcome(processed=False)

        recorded = await self._record_outcome(event, outcome, error)
        if outcome.processed:
            await self._notify(outcome)

        state = STATE_PROCESSED if outcome.processed and recorded else STATE_FAILED
        logger.info("webhook_dispatched", event_id=event.id, event_type=event.event_type, state=state)
        return IngestResult(state, event.event_type)

    async def _record_outcome(self, event, outcome: HandlerOutcome, error: BaseException | None) -> bool:
        """Mark the record processed, or append a ``webhook_errors`` row."""
        now = datetime.now(UTC)
        try:
            async with self.session_factory() as session:
                if outcome.processed:
                    record = (
                        await session.execute(
                            select(PayPalWebhookEvent).where(PayPalWebhookEvent.event_id == event.id)
                        )
                    ).scalar_one()
                    record.processed = True
                    record.processed_at = now
                else:
                    attempts = (
                        await session.execute(
                            select(func.count()).select_from(WebhookError).where(WebhookError.event_id == event.id)
                        )
                    ).scalar_one()
                    session.add(
                        WebhookError(
                            event_id=event.id,
                            error_type=_error_type(error) if error else "processing",
                            error_message=str(error) if error else f"Handler for {event.event_type} did not complete",
                            retry_count=attempts,
                            max_retries=MAX_RETRIES,
                            next_retry_at=(
                                now + RETRY_DELAYS[min(attempts, len(RETRY_DELAYS) - 1)]
                                if attempts < MAX_RETRIES
                                else None
                            ),
                        )
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("webhook_outcome_not_recorded", event_id=event.id, error=str(exc))
            return False
        return True

    async def _notify(self, outcome: HandlerOutcome) -> None:
        for notification in outcome.notifications:
            if notification.to_admins:
                await self.notifier.notify_admins(notification.kind, notification.data)
            else:
                await self.notifier.send(notification.kind, notification.recipient, notification.data)


def get_webhook_pipeline(
    paypal: PayPalClient = Depends(get_paypal_client),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> WebhookPipeline:
    return WebhookPipeline(paypal, notifier)
