"""Tests for the OAuth callback that turns a Supabase code into a session cookie."""

import json

import httpx
import pytest

from tablexport.core.auth import SupabaseAuth

pytestmark = pytest.mark.integration


def _supabase(status: int = 200, body: dict | None = None):
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body if body is not None else {"access_token": "jwt-abc", "expires_in": 3600})

    return respond


@pytest.fixture
def supabase(recording_transport):
    return recording_transport(_supabase())


@pytest.fixture
def app(engine, make_settings, build_app, supabase):
    settings = make_settings(supabase_url="https://project.supabase.test", supabase_anon_key="anon-key")
    return build_app(settings, auth_provider=SupabaseAuth(settings, http_client=supabase.client()))


async def test_exchanges_code_and_sets_cookie(client, supabase):
    client.cookies.set("sb-code-verifier", "verifier-1")

    response = await client.get("/auth/callback", params={"code": "code-1", "next": "/payment?source=extension"})

    assert response.status_code == 303
    assert response.headers["location"] == "/payment?source=extension"
    cookie = response.headers["set-cookie"]
    assert "sb-access-token=jwt-abc" in cookie
    assert "HttpOnly" in cookie

    request = supabase.requests[0]
    assert request.url.path == "/auth/v1/token"
    assert request.url.params["grant_type"] == "pkce"
    assert request.headers["apikey"] == "anon-key"
    assert json.loads(request.content) == {"auth_code": "code-1", "code_verifier": "verifier-1"}


async def test_default_next_is_landing_checkout(client):
    response = await client.get("/auth/callback", params={"code": "code-1"})

    assert response.headers["location"] == "/payment?source=landing"


@pytest.mark.parametrize("next_path", ["https://evil.example", "//evil.example", "payment"])
async def test_off_site_next_is_ignored(client, next_path):
    response = await client.get("/auth/callback", params={"code": "code-1", "next": next_path})

    assert response.headers["location"] == "/payment?source=landing"


async def test_missing_code_redirects_with_error(client, supabase):
    response = await client.get("/auth/callback")

    assert response.status_code == 303
    assert response.headers["location"] == "/?auth=error"
    assert supabase.requests == []


async def test_rejected_code_redirects_with_error(client, supabase):
    supabase.responder = _supabase(400, {"error": "invalid_grant"})

    response = await client.get("/auth/callback", params={"code": "stale"})

    assert response.headers["location"] == "/?auth=error"
    assert "set-cookie" not in response.headers


async def test_session_without_token_redirects_with_error(client, supabase):
    supabase.responder = _supabase(200, {"user": {"id": "u"}})

    response = await client.get("/auth/callback", params={"code": "code-1"})

    assert response.headers["location"] == "/?auth=error"
