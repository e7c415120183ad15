"""Shared fixtures: test settings, an in-memory SQLite database, the app, tokens."""

import os
import time

# Must be set before any tablexport module reads settings.
TEST_JWT_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256"
ADMIN_EMAIL = "admin@tablexport.test"

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_JWT_SECRET", TEST_JWT_SECRET)
os.environ.setdefault("ADMIN_EMAILS", ADMIN_EMAIL)
os.environ.setdefault("PAYPAL_ENVIRONMENT", "sandbox")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import httpx
import jwt as pyjwt
import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tablexport.core.config import Settings
from tablexport.db.base import Base

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "supabase_jwt_secret": TEST_JWT_SECRET,
        "admin_emails": frozenset({ADMIN_EMAIL}),
        "paypal_environment": "sandbox",
        "paypal_client_id": "client-id",
        "paypal_client_secret": "client-secret",
        "resend_api_key": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _make_token(
    user_id: str = "user-1",
    email: str | None = "user@example.com",
    expires_in: int = 3600,
    secret: str = TEST_JWT_SECRET,
    audience: str = "authenticated",
) -> str:
    now = int(time.time())
    claims = {"sub": user_id, "aud": audience, "iat": now, "exp": now + expires_in, "role": "authenticated"}
    if email is not None:
        claims["email"] = email
    return pyjwt.encode(claims, secret, algorithm="HS256")


class RecordingTransport:
    """httpx MockTransport handler that records requests and answers from ``responder``."""

    def __init__(self, responder=None):
        self.requests: list[httpx.Request] = []
        self.responder = responder or (lambda request: httpx.Response(200, json={"id": "email-1"}))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def _build_app(settings: Settings, **state) -> FastAPI:
    """Production wiring minus the lifespan, so no real Postgres or Redis.

    Keyword arguments replace collaborators on ``app.state``; pass
    ``limiter_provider`` to give the request gate a rate limiter.
    """
    from fastapi.middleware.cors import CORSMiddleware

    from tablexport.api.routes import api_router
    from tablexport.api.routes import auth as auth_routes
    from tablexport.gate.middleware import RequestGate, RequestGateMiddleware
    from tablexport.main import init_services, register_exception_handlers
    from tablexport.middleware.correlation import setup_correlation_middleware

    limiter_provider = state.pop("limiter_provider", lambda: None)

    app = FastAPI(title="TableXport test app")
    init_services(app, settings)
    for name, value in state.items():
        setattr(app.state, name, value)
    if "gate" not in state:
        app.state.gate = RequestGate(
            app.state.auth_provider,
            app.state.resolver,
            app.state.admin_emails,
            limiter_provider=limiter_provider,
        )

    app.add_middleware(RequestGateMiddleware)
    app.add_middleware(CORSMiddleware, allow_origins=["http://localhost:3000"], allow_methods=["*"], allow_headers=["*"])
    setup_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    app.include_router(auth_routes.router)
    return app


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_provisioned_cache():
    from tablexport.core import auth

    auth._provisioned_cache.clear()
    yield
    auth._provisioned_cache.clear()


@pytest.fixture
def make_settings():
    return _make_settings


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def make_token():
    return _make_token


@pytest.fixture
def auth_headers():
    """Factory for ``Authorization: Bearer`` headers carrying a signed test token."""

    def _headers(user_id: str = "user-1", email: str | None = "user@example.com") -> dict[str, str]:
        return {"Authorization": f"Bearer {_make_token(user_id, email)}"}

    return _headers


@pytest.fixture
def recording_transport():
    return RecordingTransport


@pytest.fixture
async def engine():
    """In-memory SQLite shared by every session in the test.

    Also installs the module-level session factory so code calling
    ``get_session_factory()`` sees the same database.
    """
    import tablexport.db.base as db_mod
    import tablexport.db.models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    import tablexport.db.base as db_mod

    return db_mod._session_factory


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def build_app():
    return _build_app


@pytest.fixture
def app(engine, settings) -> FastAPI:
    return _build_app(settings)


@pytest.fixture
async def client(app: FastAPI):
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
