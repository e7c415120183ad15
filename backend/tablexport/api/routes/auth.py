"""OAuth callback: swap the provider's code for a session cookie."""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from tablexport.core.auth import (
    ACCESS_TOKEN_COOKIE,
    CODE_VERIFIER_COOKIE,
    SupabaseAuth,
    get_auth_provider,
)
from tablexport.core.config import get_settings
from tablexport.core.exceptions import TableXportError

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["auth"])

DEFAULT_NEXT = "/payment?source=landing"


def _safe_next(next_path: str | None) -> str:
    """Only same-site relative paths; anything else falls back to checkout."""
    if not next_path or not next_path.startswith("/") or next_path.startswith("//"):
        return DEFAULT_NEXT
    return next_path


@router.get("/auth/callback")
async def auth_callback(
    request: Request,
    code: str | None = None,
    next: str | None = None,
    provider: SupabaseAuth = Depends(get_auth_provider),
):
    if not code:
        return RedirectResponse("/?auth=error", status_code=303)

    try:
        session = await provider.exchange_code_for_session(code, request.cookies.get(CODE_VERIFIER_COOKIE))
    except TableXportError as exc:
        logger.warning("auth_callback_failed", error=exc.message)
        return RedirectResponse("/?auth=error", status_code=303)

    access_token = session.get("access_token")
    if not access_token:
        logger.warning("auth_callback_failed", error="no access token in session")
        return RedirectResponse("/?auth=error", status_code=303)

    response = RedirectResponse(_safe_next(next), status_code=303)
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        access_token,
        max_age=int(session.get("expires_in", 3600)),
        httponly=True,
        secure=not get_settings().debug,
        samesite="lax",
    )
    response.delete_cookie(CODE_VERIFIER_COOKIE)
    return response
