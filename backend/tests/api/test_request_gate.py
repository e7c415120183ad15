"""Tests for the request gate middleware: sessions, Pro gating, admin, rate limits."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import fakeredis.aioredis
import httpx
import pytest

from tablexport.db.models.subscription import PLAN_PRO, STATUS_ACTIVE, Subscription
from tablexport.gate.rate_limit import RateLimiter

pytestmark = pytest.mark.integration

ADMIN = "admin@tablexport.test"


async def _make_pro(session_factory, user_id="user-1"):
    async with session_factory() as session:
        session.add(
            Subscription(
                user_id=user_id,
                plan_type=PLAN_PRO,
                status=STATUS_ACTIVE,
                current_period_start=datetime.now(UTC),
                current_period_end=datetime.now(UTC) + timedelta(days=365),
            )
        )
        await session.commit()


def _add_pages(app):
    """Stand-ins for the site's pages, which the gate fronts."""

    async def page():
        return {"page": "ok"}

    for path in ("/payment", "/success", "/admin"):
        app.add_api_route(path, page, methods=["GET"])
    return app


@pytest.fixture
def app(engine, settings, build_app):
    return _add_pages(build_app(settings))


async def _client_for(app):
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://testserver",
    )


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


class TestPages:
    async def test_payment_without_session_redirects_to_sign_in(self, client):
        response = await client.get("/payment")

        assert response.status_code == 307
        assert response.headers["location"] == "/?auth=required&redirect=/payment"

    async def test_success_without_session_redirects(self, client):
        response = await client.get("/success")

        assert response.status_code == 307
        assert response.headers["location"] == "/?auth=required&redirect=/success"

    async def test_success_with_session_is_allowed(self, client, make_token):
        client.cookies.set("sb-access-token", make_token())

        response = await client.get("/success")

        assert response.status_code == 200
        assert response.json() == {"page": "ok"}

    async def test_extension_checkout_without_session_keeps_source(self, client):
        response = await client.get("/payment", params={"source": "extension"})

        assert response.status_code == 307
        assert response.headers["location"] == "/?auth=required&source=extension&redirect=/payment"

    async def test_extension_checkout_for_pro_user_goes_to_success(self, client, make_token, session_factory):
        await _make_pro(session_factory)
        client.cookies.set("sb-access-token", make_token())

        response = await client.get("/payment", params={"source": "extension"})

        assert response.status_code == 307
        assert response.headers["location"] == "/success?already_pro=true"

    async def test_extension_checkout_for_free_user_is_allowed(self, client, make_token):
        client.cookies.set("sb-access-token", make_token())

        response = await client.get("/payment", params={"source": "extension"})

        assert response.status_code == 200

    async def test_expired_token_counts_as_no_session(self, client, make_token):
        client.cookies.set("sb-access-token", make_token(expires_in=-60))

        response = await client.get("/payment")

        assert response.status_code == 307


# ---------------------------------------------------------------------------
# API routes
# ---------------------------------------------------------------------------


class TestApiRoutes:
    async def test_missing_session_is_401_json(self, client):
        response = await client.get("/api/subscription/status")

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Unauthorized"}

    async def test_token_signed_with_other_secret_is_rejected(self, client, make_token):
        token = make_token(secret="another-secret-that-is-long-enough-for-hs256")

        response = await client.get("/api/subscription/status", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    async def test_identity_headers_are_added(self, client, auth_headers):
        response = await client.get("/api/subscription/status", headers=auth_headers("user-1", "User@Example.com"))

        assert response.status_code == 200
        assert response.headers["x-user-id"] == "user-1"
        assert response.headers["x-user-email"] == "user@example.com"

    async def test_pro_route_rejects_free_user(self, client, auth_headers):
        response = await client.get("/api/subscription/pro-features", headers=auth_headers())

        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "error": "Pro subscription required",
            "subscriptionStatus": "free",
        }

    async def test_pro_route_allows_pro_user(self, client, auth_headers, session_factory):
        await _make_pro(session_factory)

        response = await client.get("/api/subscription/pro-features", headers=auth_headers())

        assert response.status_code == 200
        assert "Unlimited exports" in response.json()["data"]["features"]

    async def test_disallowed_method_is_405(self, client, auth_headers):
        response = await client.put("/api/subscription/status", headers=auth_headers())

        assert response.status_code == 405
        assert response.json()["error"] == "Method not allowed"

    async def test_webhook_intake_skips_session_check(self, client):
        response = await client.post("/api/paypal/webhooks", content=b"{}")

        assert response.status_code == 401
        assert response.json()["error"] != "Unauthorized"

    async def test_gate_failure_is_500_for_api(self, engine, settings, build_app, auth_headers):
        resolver = MagicMock()
        resolver.resolve = AsyncMock(side_effect=RuntimeError("resolver down"))
        app = build_app(settings, resolver=resolver)

        async with await _client_for(app) as client:
            response = await client.get("/api/subscription/pro-features", headers=auth_headers())

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Internal server error"}

    async def test_gate_failure_on_extension_checkout_allows(self, engine, settings, build_app, make_token):
        resolver = MagicMock()
        resolver.resolve = AsyncMock(side_effect=RuntimeError("resolver down"))
        app = _add_pages(build_app(settings, resolver=resolver))

        async with await _client_for(app) as client:
            client.cookies.set("sb-access-token", make_token())
            response = await client.get("/payment", params={"source": "extension"})

        assert response.status_code == 200


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class TestAdmin:
    async def test_admin_api_without_session_is_401(self, client):
        response = await client.get("/api/admin/payments")

        assert response.status_code == 401

    async def test_admin_api_non_admin_is_403(self, client, auth_headers):
        response = await client.get("/api/admin/payments", headers=auth_headers("user-1", "user@example.com"))

        assert response.status_code == 403
        assert response.json() == {"success": False, "error": "Forbidden"}

    async def test_admin_api_allow_listed_email(self, client, auth_headers):
        response = await client.get("/api/admin/payments", headers=auth_headers("admin-1", ADMIN))

        assert response.status_code == 200

    async def test_admin_page_non_admin_redirects_home(self, client, make_token):
        client.cookies.set("sb-access-token", make_token())

        response = await client.get("/admin")

        assert response.status_code == 307
        assert response.headers["location"] == "/"

    async def test_admin_page_without_session_asks_to_sign_in(self, client):
        response = await client.get("/admin")

        assert response.headers["location"] == "/?auth=required&redirect=/admin"


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class TestRateLimit:
    async def test_requests_over_budget_are_429(self, engine, settings, build_app, auth_headers):
        redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
        paypal = MagicMock()
        paypal.create_order = AsyncMock(return_value={"id": "5O190127TN364715T"})
        limiter = RateLimiter(redis, clock=lambda: 1_000_000.0)
        app = build_app(settings, paypal_client=paypal, limiter_provider=lambda: limiter)
        headers = auth_headers()

        async with await _client_for(app) as client:
            statuses = [
                (await client.post("/api/paypal/create-order", json={"planType": "pro"}, headers=headers)).status_code
                for _ in range(11)
            ]
            blocked = await client.post("/api/paypal/create-order", json={"planType": "pro"}, headers=headers)

        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429
        assert blocked.json() == {"success": False, "error": "Too many requests"}

    async def test_budget_is_per_user(self, engine, settings, build_app, auth_headers):
        redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
        paypal = MagicMock()
        paypal.create_order = AsyncMock(return_value={"id": "5O190127TN364715T"})
        limiter = RateLimiter(redis, clock=lambda: 1_000_000.0)
        app = build_app(settings, paypal_client=paypal, limiter_provider=lambda: limiter)

        async with await _client_for(app) as client:
            for _ in range(10):
                await client.post("/api/paypal/create-order", json={"planType": "pro"}, headers=auth_headers("user-1"))
            other = await client.post(
                "/api/paypal/create-order", json={"planType": "pro"}, headers=auth_headers("user-2")
            )

        assert other.status_code == 200
