"""Async PayPal REST client: OAuth token, orders, webhook verification.

Transport errors (connect/read failures) are retried with exponential
backoff; a non-2xx answer raises ``PayPalAPIError`` immediately.
"""

import time
from collections.abc import Mapping
from typing import Any

import httpx
import structlog
from fastapi import Request
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tablexport.core.config import Settings, get_settings
from tablexport.core.exceptions import PayPalAPIError
from tablexport.paypal.plans import PricingPlan, format_amount

logger = structlog.get_logger(__name__)

PAYPAL_API_BASE = {
    "production": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}

WEBHOOK_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-cert-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
    "paypal-auth-algo",
)

# Refresh the token this many seconds before PayPal says it expires
_TOKEN_EXPIRY_MARGIN = 60


def missing_signature_headers(headers: Mapping[str, str]) -> list[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    return [name for name in WEBHOOK_SIGNATURE_HEADERS if not lowered.get(name)]


class PayPalClient:
    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.environment = "production" if settings.paypal_environment == "production" else "sandbox"
        self.base_url = PAYPAL_API_BASE[self.environment]
        self._http = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self._http.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "paypal_request_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._http.request(method, f"{self.base_url}{path}", **kwargs)

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("paypal_transport_failed", path=path, error=str(exc))
            raise PayPalAPIError(f"PayPal request to {path} failed") from exc

        if response.is_error:
            logger.error(
                "paypal_api_error",
                path=path,
                status=response.status_code,
                body=response.text[:500],
            )
            raise PayPalAPIError(f"PayPal {path} returned {response.status_code}", status=response.status_code)
        return response.json()

    async def get_access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry."""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        data = await self._call(
            "POST",
            "/v1/oauth2/token",
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        self._access_token = data["access_token"]
        self._token_expires_at = time.monotonic() + max(0, int(data.get("expires_in", 0)) - _TOKEN_EXPIRY_MARGIN)
        return self._access_token

    async def _authed(self, method: str, path: str, json: dict | None = None) -> dict:
        token = await self.get_access_token()
        return await self._call(
            method,
            path,
            json=json,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
        )

    async def create_order(self, plan: PricingPlan) -> dict:
        base_url = self.settings.base_url.rstrip("/")
        order = await self._authed(
            "POST",
            "/v2/checkout/orders",
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {
                            "currency_code": plan.currency,
                            "value": format_amount(plan.price),
                        },
                        "description": f"{plan.name} Plan - TableXport",
                    }
                ],
                "application_context": {
                    "return_url": f"{base_url}/success",
                    "cancel_url": f"{base_url}/payment",
                },
            },
        )
        logger.info("paypal_order_created", order_id=order.get("id"), plan=plan.id)
        return order

    async def capture_order(self, order_id: str) -> dict:
        capture = await self._authed("POST", f"/v2/checkout/orders/{order_id}/capture")
        logger.info("paypal_order_captured", order_id=order_id, status=capture.get("status"))
        return capture

    async def verify_webhook_signature(self, headers: Mapping[str, str], event: dict) -> bool:
        """Check a webhook delivery's transmission headers.

        Sandbox deliveries only need the five headers present. In production
        PayPal's verification endpoint must answer ``SUCCESS``.
        """
        missing = missing_signature_headers(headers)
        if missing:
            logger.warning("paypal_webhook_headers_missing", missing=missing)
            return False

        if self.environment != "production":
            return True

        if not self.settings.paypal_webhook_id:
            logger.error("paypal_webhook_id_missing")
            return False

        lowered = {k.lower(): v for k, v in headers.items()}
        try:
            result = await self._authed(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json={
                    "auth_algo": lowered["paypal-auth-algo"],
                    "cert_id": lowered["paypal-cert-id"],
                    "transmission_id": lowered["paypal-transmission-id"],
                    "transmission_sig": lowered["paypal-transmission-sig"],
                    "transmission_time": lowered["paypal-transmission-time"],
                    "webhook_id": self.settings.paypal_webhook_id,
                    "webhook_event": event,
                },
            )
        except PayPalAPIError:
            return False

        verified = result.get("verification_status") == "SUCCESS"
        if not verified:
            logger.warning("paypal_webhook_signature_rejected", status=result.get("verification_status"))
        return verified


def get_paypal_client(request: Request) -> PayPalClient:
    client = getattr(request.app.state, "paypal_client", None)
    if client is None:
        client = PayPalClient(get_settings())
        request.app.state.paypal_client = client
    return client
