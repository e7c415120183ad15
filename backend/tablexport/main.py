"""TableXport billing API: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other app imports
# (structlog caches the processor chain on first use).
from tablexport.core.logging import configure_structlog
from tablexport.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tablexport.api.routes import api_router
from tablexport.api.routes import auth as auth_routes
from tablexport.core.auth import SupabaseAuth
from tablexport.core.config import Settings, get_settings
from tablexport.core.exceptions import TableXportError
from tablexport.db import close_db, close_redis, init_db, init_redis
from tablexport.gate.middleware import RequestGate, RequestGateMiddleware
from tablexport.middleware.correlation import get_correlation_id, setup_correlation_middleware
from tablexport.paypal.client import PayPalClient
from tablexport.services.notifications import NotificationDispatcher
from tablexport.services.subscription import SubscriptionResolver
from tablexport.services.usage import UsageCounter

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info(
        "startup_begin",
        app_name=settings.app_name,
        environment=settings.environment,
        paypal_environment=settings.paypal_environment,
    )

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    yield

    logger.info("shutdown_begin")
    await app.state.paypal_client.aclose()
    await app.state.notifier.aclose()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _error_context(request: Request, debug_id: str) -> dict:
    return {
        "debug_id": debug_id,
        "correlation_id": get_correlation_id(),
        "path": request.url.path,
        "method": request.method,
        "user_id": getattr(request.state, "user_id", None),
    }


async def tablexport_exception_handler(request: Request, exc: TableXportError) -> JSONResponse:
    """Domain errors: the error's own status and client-safe message."""
    debug_id = str(uuid.uuid4())
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_failed",
        status_code=exc.status_code,
        error=exc.message,
        error_type=type(exc).__name__,
        cause=repr(exc.__cause__) if exc.__cause__ else None,
        **_error_context(request, debug_id),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_payload(), "debug_id": debug_id},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    debug_id = str(uuid.uuid4())
    logger.warning("http_exception", status_code=exc.status_code, detail=exc.detail, **_error_context(request, debug_id))
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    debug_id = str(uuid.uuid4())
    logger.warning("request_validation_failed", errors=exc.errors(), **_error_context(request, debug_id))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request body", "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: full traceback to the logs, generic 500 to the client."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
        **_error_context(request, debug_id),
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "debug_id": debug_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(TableXportError)(tablexport_exception_handler)
    app.exception_handler(StarletteHTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)


def init_services(app: FastAPI, settings: Settings) -> None:
    """Attach long-lived collaborators to ``app.state``.

    Route dependencies and the request gate read them from there, so tests
    can swap any of them on a fresh app.
    """
    app.state.admin_emails = settings.admin_emails
    app.state.auth_provider = SupabaseAuth(settings)
    app.state.resolver = SubscriptionResolver(settings)
    app.state.usage_counter = UsageCounter()
    app.state.paypal_client = PayPalClient(settings)
    app.state.notifier = NotificationDispatcher(settings, admin_emails=settings.admin_emails)
    app.state.gate = RequestGate(
        app.state.auth_provider,
        app.state.resolver,
        app.state.admin_emails,
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="TableXport billing API - subscriptions, usage limits and PayPal checkout",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    init_services(app, settings)

    # Outermost last: correlation id, CORS, then the request gate
    app.add_middleware(RequestGateMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-user-id", "x-user-email", "X-Request-ID"],
    )
    setup_correlation_middleware(app)

    register_exception_handlers(app)

    app.include_router(api_router, prefix="/api")
    app.include_router(auth_routes.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tablexport.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
