import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness probe. 503 while the process is draining."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "tablexport-api"},
        )
    return {"status": "healthy", "service": "tablexport-api"}


@router.get("/ready")
async def readiness_check():
    """Readiness probe. The database is required; Redis only backs rate limits."""
    checks = {"database": False, "redis": False}

    try:
        from tablexport.db.base import get_session_factory

        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e))

    try:
        from tablexport.db.redis import get_redis

        await get_redis().ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("readiness_redis_failed", error=str(e))

    ready = checks["database"]
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if all(checks.values()) else "degraded", "checks": checks},
    )
