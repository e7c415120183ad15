"""Supabase session authentication for FastAPI."""

from dataclasses import dataclass, field

import httpx
import jwt as pyjwt
import structlog
from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError

from tablexport.core.config import Settings, get_settings
from tablexport.core.exceptions import AuthenticationRequired, AuthorizationDenied, UpstreamFailure

logger = structlog.get_logger(__name__)

ACCESS_TOKEN_COOKIE = "sb-access-token"
CODE_VERIFIER_COOKIE = "sb-code-verifier"

# In-memory cache of provisioned user IDs to avoid DB queries on every request
_provisioned_cache: set[str] = set()


@dataclass(frozen=True)
class SessionUser:
    """Authenticated user extracted from a Supabase access token."""

    user_id: str
    email: str | None = None
    claims: dict = field(default_factory=dict, compare=False)


class SupabaseAuth:
    """Reads and verifies Supabase sessions; exchanges OAuth codes.

    Access tokens are HS256 JWTs signed with the project's JWT secret. They
    arrive either as ``Authorization: Bearer`` (extension, API clients) or in
    the ``sb-access-token`` cookie (browser pages).
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._http = http_client

    def decode_token(self, token: str) -> SessionUser:
        """Verify and decode an access token.

        Raises ``AuthenticationRequired`` on any validation failure.
        """
        try:
            payload = pyjwt.decode(
                token,
                self.settings.supabase_jwt_secret,
                algorithms=["HS256"],
                audience=self.settings.supabase_jwt_audience,
                options={"require": ["sub", "exp"]},
            )
        except pyjwt.ExpiredSignatureError:
            raise AuthenticationRequired("Token expired")
        except pyjwt.InvalidTokenError as exc:
            logger.info("auth_token_rejected", reason=type(exc).__name__)
            raise AuthenticationRequired()

        email = payload.get("email") or None
        return SessionUser(
            user_id=payload["sub"],
            email=email.lower() if email else None,
            claims=payload,
        )

    @staticmethod
    def token_from_request(request: Request) -> str | None:
        header = request.headers.get("authorization", "")
        scheme, _, credentials = header.partition(" ")
        if scheme.lower() == "bearer" and credentials:
            return credentials.strip()
        return request.cookies.get(ACCESS_TOKEN_COOKIE)

    async def get_current_user(self, request: Request) -> SessionUser | None:
        """Return the session user, or None when absent or invalid."""
        token = self.token_from_request(request)
        if not token:
            return None
        try:
            return self.decode_token(token)
        except AuthenticationRequired:
            return None

    async def exchange_code_for_session(self, code: str, code_verifier: str | None = None) -> dict:
        """Exchange an OAuth/PKCE code for a session (access + refresh token)."""
        url = f"{self.settings.supabase_url.rstrip('/')}/auth/v1/token"
        client = self._http or httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
        try:
            response = await client.post(
                url,
                params={"grant_type": "pkce"},
                headers={"apikey": self.settings.supabase_anon_key},
                json={"auth_code": code, "code_verifier": code_verifier or ""},
            )
        except httpx.HTTPError as exc:
            raise UpstreamFailure("Failed to exchange auth code") from exc
        finally:
            if self._http is None:
                await client.aclose()

        if response.status_code != 200:
            logger.warning("auth_code_exchange_failed", status=response.status_code)
            raise AuthenticationRequired("Invalid auth code")
        return response.json()


def get_auth_provider(request: Request) -> SupabaseAuth:
    provider = getattr(request.app.state, "auth_provider", None)
    if provider is None:
        provider = SupabaseAuth(get_settings())
        request.app.state.auth_provider = provider
    return provider


def get_admin_emails(request: Request) -> frozenset[str]:
    """Admin allow-list, resolved once at startup and stored on app state."""
    emails = getattr(request.app.state, "admin_emails", None)
    return emails if emails is not None else get_settings().admin_emails


def is_admin_user(user: SessionUser, admin_emails: frozenset[str]) -> bool:
    return bool(user.email) and user.email.lower() in admin_emails


async def require_auth(
    request: Request,
    provider: SupabaseAuth = Depends(get_auth_provider),
) -> SessionUser:
    """FastAPI dependency returning the caller's session.

    Reuses the user the request gate already resolved when present. Also
    provisions a ``user_profiles`` row on a user's first call; a storage
    failure there is logged and retried on the next request.
    """
    user = getattr(request.state, "user", None)
    if user is None:
        user = await provider.get_current_user(request)
    if user is None:
        raise AuthenticationRequired()

    if user.user_id not in _provisioned_cache:
        from tablexport.core.provisioning import provision_user_on_first_login

        try:
            await provision_user_on_first_login(user.user_id, user.email)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "user_provisioning_failed",
                user_id=user.user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            _provisioned_cache.add(user.user_id)

    request.state.user_id = user.user_id
    return user


async def require_admin(
    user: SessionUser = Depends(require_auth),
    admin_emails: frozenset[str] = Depends(get_admin_emails),
) -> SessionUser:
    """FastAPI dependency that requires an allow-listed admin email."""
    if not is_admin_user(user, admin_emails):
        raise AuthorizationDenied()
    return user
