"""Best-effort transactional email through the Resend HTTP API.

``send`` never raises: template errors, transport failures and non-2xx
answers are logged and dropped, so a payment flow never fails because an
email could not go out.
"""

from pathlib import Path
from typing import Any

import httpx
import structlog
from fastapi import Request
from jinja2 import Environment, FileSystemLoader

from tablexport.core.config import Settings, get_settings
from tablexport.core.exceptions import NotificationFailure

logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

PAYMENT_CONFIRMATION = "payment_confirmation"
SUBSCRIPTION_ACTIVATED = "subscription_activated"
PAYMENT_FAILED = "payment_failed"
ADMIN_PAYMENT_SUCCESS = "admin_payment_success"
ADMIN_PAYMENT_FAILED = "admin_payment_failed"

# kind -> subject template; the body lives in templates/email/<kind>.html
SUBJECTS = {
    PAYMENT_CONFIRMATION: "Payment processed successfully - TableXport Pro",
    SUBSCRIPTION_ACTIVATED: "Your TableXport Pro subscription is active",
    PAYMENT_FAILED: "Payment failed - TableXport",
    ADMIN_PAYMENT_SUCCESS: "💰 Successful payment {{ amount }} {{ currency }}",
    ADMIN_PAYMENT_FAILED: "⚠️ Failed payment {{ amount }} {{ currency }}",
}


class NotificationDispatcher:
    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        admin_emails: frozenset[str] | None = None,
    ):
        self.settings = settings
        self.admin_emails = admin_emails if admin_emails is not None else settings.admin_emails
        self._http = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=True,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def render(self, kind: str, data: dict[str, Any]) -> tuple[str, str]:
        """Return ``(subject, html)`` for ``kind``. Raises KeyError on unknown kinds."""
        context = {"base_url": self.settings.base_url.rstrip("/"), **data}
        subject = self.env.from_string(SUBJECTS[kind]).render(**context)
        html = self.env.get_template(f"{kind}.html").render(**context)
        return subject, html

    async def _deliver(self, recipient: str, subject: str, html: str) -> None:
        response = await self._http.post(
            f"{self.settings.resend_api_url.rstrip('/')}/emails",
            headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
            json={
                "from": self.settings.email_from,
                "to": [recipient],
                "reply_to": self.settings.email_reply_to,
                "subject": subject,
                "html": html,
            },
        )
        if response.is_error:
            raise NotificationFailure(f"Resend returned {response.status_code}")

    async def send(self, kind: str, recipient: str | None, data: dict[str, Any]) -> None:
        if not recipient:
            logger.warning("notification_skipped", kind=kind, reason="no_recipient")
            return
        if not self.settings.resend_api_key:
            logger.info("notification_skipped", kind=kind, reason="resend_not_configured")
            return

        try:
            subject, html = self.render(kind, data)
            await self._deliver(recipient, subject, html)
        except Exception as exc:
            logger.warning(
                "notification_failed",
                kind=kind,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return

        logger.info("notification_sent", kind=kind)

    async def notify_admins(self, kind: str, data: dict[str, Any]) -> None:
        for email in sorted(self.admin_emails):
            await self.send(kind, email, data)


def get_notifier(request: Request) -> NotificationDispatcher:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        notifier = NotificationDispatcher(get_settings())
        request.app.state.notifier = notifier
    return notifier
