"""
FastAPI application entry point for the Market Sync service.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from market_sync.api.v1.routes import market as market_router
from market_sync.api.v1.routes import sync as sync_router
from market_sync.core.config import get_settings
from market_sync.core.database import pg_engine
from market_sync.core.exception_handlers import EXCEPTION_HANDLERS
from market_sync.core.health import get_health_status
from market_sync.core.logging import get_logger, setup_logging
from market_sync.core.prometheus_metrics import get_metrics_response
from market_sync.core.redis_client import close_redis

setup_logging()

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    logger.info("Starting Market Sync service")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    yield

    logger.info("Shutting down Market Sync service")
    await close_redis()
    await pg_engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.APP_VERSION,
    description="Market data sync queue for StockX and Alias",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

allowed_origins = settings.ALLOWED_ORIGINS.split(",")
if "*" in allowed_origins and settings.ENVIRONMENT == "production":
    logger.warning("CORS allow_origins is set to '*' in production! This is a security risk.")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

for exception_type, handler in EXCEPTION_HANDLERS.items():
    app.add_exception_handler(exception_type, handler)


@app.get("/health/live")
async def health_live():
    """Liveness probe."""
    return {"status": "alive"}


@app.get("/health/ready")
async def health_ready():
    """
    Readiness probe.

    Returns 200 when PostgreSQL, Redis and Celery are healthy, 503 otherwise.
    """
    health_status = await get_health_status()
    if health_status["status"] == "healthy":
        return health_status
    return JSONResponse(status_code=503, content=health_status)


@app.get("/health")
async def health():
    """Detailed health check for all components."""
    return await get_health_status()


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    metrics_text, content_type = get_metrics_response()
    return Response(content=metrics_text, media_type=content_type)


app.include_router(sync_router.router, prefix=settings.API_V1_STR)
app.include_router(market_router.router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "market_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
