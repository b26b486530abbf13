import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from opsflow.api.deps import get_session_factory
from opsflow.core.config import settings
from opsflow.core.observability import metrics_registry
from opsflow.core.redis_client import get_redis

logger = logging.getLogger("opsflow.core")

router = APIRouter()

@router.get("/health/live")
async def liveness():
    return {"status": "alive"}

@router.get("/health/ready")
async def readiness(session_factory: async_sessionmaker = Depends(get_session_factory)):
    checks = {"database": "unhealthy"}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.warning("readiness: database check failed: %s", e)

    if settings.CHANGE_FEED_BACKEND == "redis":
        checks["redis"] = "unhealthy"
        try:
            await get_redis().ping()
            checks["redis"] = "healthy"
        except Exception as e:
            logger.warning("readiness: redis check failed: %s", e)

    status = "healthy" if all(value == "healthy" for value in checks.values()) else "unhealthy"
    return {"status": status, "checks": checks}

@router.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    return metrics_registry.render_prometheus()
