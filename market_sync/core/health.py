"""
Health check utilities for Market Sync.

Checks PostgreSQL, Redis and the Celery broker and aggregates them into a
single status.
"""
import asyncio
from typing import Any, Dict

from sqlalchemy import text

from market_sync.core.config import get_settings
from market_sync.core.database import get_db_session_context
from market_sync.core.logging import get_logger
from market_sync.core.redis_client import get_redis

settings = get_settings()
logger = get_logger(__name__)


async def check_postgresql() -> Dict[str, Any]:
    """Check PostgreSQL connection."""
    try:
        async with get_db_session_context() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

            return {
                "status": "healthy",
                "message": "PostgreSQL connection successful",
            }
    except Exception as e:
        logger.error(f"PostgreSQL health check failed: {e}", exc_info=True)
        return {
            "status": "unhealthy",
            "message": f"PostgreSQL connection failed: {str(e)}",
            "error": str(e),
        }


async def check_redis() -> Dict[str, Any]:
    """Check Redis connection."""
    try:
        redis = await get_redis()
        if not redis:
            return {
                "status": "unhealthy",
                "message": "Redis client not available",
            }

        await redis.ping()

        return {
            "status": "healthy",
            "message": "Redis connection successful",
        }
    except Exception as e:
        logger.error(f"Redis health check failed: {e}", exc_info=True)
        return {
            "status": "unhealthy",
            "message": f"Redis connection failed: {str(e)}",
            "error": str(e),
        }


async def check_celery() -> Dict[str, Any]:
    """Check Celery broker connectivity and responding workers."""
    try:
        from market_sync.tasks.celery_app import celery_app

        inspect = celery_app.control.inspect(timeout=1.0)
        active_queues = await asyncio.to_thread(inspect.active_queues)

        if active_queues is None:
            return {
                "status": "degraded",
                "message": "Celery broker connection check failed (no workers responding)",
            }

        return {
            "status": "healthy",
            "message": "Celery broker connection successful",
            "active_workers": len(active_queues),
        }
    except Exception as e:
        logger.error(f"Celery health check failed: {e}", exc_info=True)
        return {
            "status": "unhealthy",
            "message": f"Celery broker check failed: {str(e)}",
            "error": str(e),
        }


def aggregate_status(component_statuses) -> str:
    """healthy when all are healthy, unhealthy when any is, degraded otherwise."""
    statuses = list(component_statuses)
    if all(status == "healthy" for status in statuses):
        return "healthy"
    if any(status == "unhealthy" for status in statuses):
        return "unhealthy"
    return "degraded"


async def get_health_status() -> Dict[str, Any]:
    """Get aggregated health status for all components."""
    results = await asyncio.gather(
        check_postgresql(),
        check_redis(),
        check_celery(),
        return_exceptions=True,
    )

    components = {}
    for name, result in zip(("postgresql", "redis", "celery"), results):
        if isinstance(result, Exception):
            result = {
                "status": "unhealthy",
                "message": f"{name} check raised exception: {str(result)}",
            }
        components[name] = result

    return {
        "status": aggregate_status(c.get("status") for c in components.values()),
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "components": components,
    }
