"""Request gate: per-request allow / redirect / reject decisions.

Checks run in a fixed order and the first one that applies decides:

1. admin routes: session plus an allow-listed email
2. public webhook intake: always allowed (it verifies its own signature)
3. protected and Pro-only routes: session, Pro for Pro-only paths, the
   route's rate limit, then caller identity headers on API responses
4. ``/payment?source=extension``: sign-in redirect, or straight to the
   success page for users who are already Pro
5. everything else passes through

API paths get JSON errors; pages get redirects. Nothing is kept between
requests.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import urlencode

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tablexport.core.auth import SessionUser, SupabaseAuth, is_admin_user
from tablexport.db.redis import get_redis
from tablexport.gate.rate_limit import RateLimiter
from tablexport.gate.routes import (
    PAYMENT_PAGE,
    SUCCESS_PAGE,
    get_route_config,
    is_admin_route,
    is_api_route,
    is_protected_route,
    is_public_route,
    requires_pro_subscription,
)
from tablexport.services.subscription import SubscriptionResolver

logger = structlog.get_logger(__name__)

ALLOW = "allow"
REDIRECT = "redirect"
REJECT = "reject"


@dataclass(frozen=True)
class GateDecision:
    action: str
    status_code: int = 200
    location: str | None = None
    body: dict | None = None
    user: SessionUser | None = None
    headers: dict[str, str] = field(default_factory=dict)


def allow(user: SessionUser | None = None, headers: dict[str, str] | None = None) -> GateDecision:
    return GateDecision(ALLOW, user=user, headers=headers or {})


def redirect(path: str, **params: str) -> GateDecision:
    location = f"{path}?{urlencode(params, safe='/')}" if params else path
    return GateDecision(REDIRECT, status_code=307, location=location)


def reject(status_code: int, error: str, **extra) -> GateDecision:
    return GateDecision(REJECT, status_code=status_code, body={"success": False, "error": error, **extra})


def _redis_limiter() -> RateLimiter | None:
    try:
        return RateLimiter(get_redis())
    except RuntimeError:
        return None


class RequestGate:
    def __init__(
        self,
        auth_provider: SupabaseAuth,
        resolver: SubscriptionResolver,
        admin_emails: frozenset[str],
        limiter_provider: Callable[[], RateLimiter | None] = _redis_limiter,
    ):
        self.auth = auth_provider
        self.resolver = resolver
        self.admin_emails = admin_emails
        self.limiter_provider = limiter_provider

    async def decide(self, request: Request) -> GateDecision:
        path = request.url.path

        if is_admin_route(path):
            return await self._admin(request, path)

        if is_public_route(path):
            return allow()

        if is_protected_route(path):
            decision = await self._protected(request, path)
            if decision.action != ALLOW or path != PAYMENT_PAGE:
                return decision

        if path == PAYMENT_PAGE and request.query_params.get("source") == "extension":
            return await self._extension_checkout(request)

        return allow()

    async def _admin(self, request: Request, path: str) -> GateDecision:
        api = is_api_route(path)
        try:
            user = await self.auth.get_current_user(request)
            if user is None:
                return reject(401, "Unauthorized") if api else redirect("/", auth="required", redirect=path)
            if not is_admin_user(user, self.admin_emails):
                logger.warning("gate_admin_denied", path=path, user_id=user.user_id)
                return reject(403, "Forbidden") if api else redirect("/")
            return allow(user)
        except Exception as exc:
            logger.error("gate_error", path=path, error=str(exc), error_type=type(exc).__name__, exc_info=True)
            return reject(500, "Internal server error") if api else redirect("/")

    async def _protected(self, request: Request, path: str) -> GateDecision:
        api = is_api_route(path)
        try:
            user = await self.auth.get_current_user(request)
            if user is None:
                if api:
                    return reject(401, "Unauthorized")
                if path == PAYMENT_PAGE and request.query_params.get("source") == "extension":
                    return redirect("/", auth="required", source="extension", redirect=path)
                return redirect("/", auth="required", redirect=path)

            if path == SUCCESS_PAGE:
                return allow(user)

            if requires_pro_subscription(path):
                entitlement = await self.resolver.resolve(user.user_id)
                if not entitlement.is_pro:
                    if api:
                        return reject(403, "Pro subscription required", subscriptionStatus=entitlement.status)
                    return redirect(PAYMENT_PAGE, upgrade="required")

            if not api:
                return allow(user)

            config = get_route_config(path)
            if config is not None and config.allowed_methods and request.method not in config.allowed_methods:
                return reject(405, "Method not allowed")
            if config is not None and config.rate_limit is not None:
                limiter = self.limiter_provider()
                if limiter is not None and not await limiter.hit(config.path, user.user_id, config.rate_limit):
                    return reject(429, "Too many requests")

            return allow(user, headers={"x-user-id": user.user_id, "x-user-email": user.email or ""})
        except Exception as exc:
            logger.error("gate_error", path=path, error=str(exc), error_type=type(exc).__name__, exc_info=True)
            return reject(500, "Internal server error") if api else redirect("/")

    async def _extension_checkout(self, request: Request) -> GateDecision:
        try:
            user = await self.auth.get_current_user(request)
            if user is None:
                return redirect("/", auth="required", source="extension", redirect=PAYMENT_PAGE)
            entitlement = await self.resolver.resolve(user.user_id)
            if entitlement.is_pro:
                return redirect(SUCCESS_PAGE, already_pro="true")
            return allow(user)
        except Exception as exc:
            logger.error("gate_checkout_check_failed", error=str(exc), exc_info=True)
            return allow()


class RequestGateMiddleware(BaseHTTPMiddleware):
    """Applies ``app.state.gate`` to every HTTP request."""

    async def dispatch(self, request: Request, call_next):
        gate: RequestGate = request.app.state.gate
        decision = await gate.decide(request)

        if decision.action == REDIRECT:
            return RedirectResponse(decision.location, status_code=decision.status_code)
        if decision.action == REJECT:
            return JSONResponse(status_code=decision.status_code, content=decision.body)

        if decision.user is not None:
            request.state.user = decision.user
        response = await call_next(request)
        for name, value in decision.headers.items():
            response.headers[name] = value
        return response
