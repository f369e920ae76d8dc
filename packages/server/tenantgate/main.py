"""
TenantGate API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tenantgate.api.v1 import router as api_v1_router
from tenantgate.core.config import get_settings
from tenantgate.core.database import engine
from tenantgate.core.errors import register_error_handlers
from tenantgate.core.logging import configure_logging
from tenantgate.core.metrics import metrics
from tenantgate.core.middleware import (
    CSRFMiddleware,
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
)
from tenantgate.core.redis import close_redis, redis_ready

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="TenantGate",
        description="Hierarchical multi-tenant authorization for organisations and projects.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    register_error_handlers(app)

    # Middleware order matters: the last one added is outermost.
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CSRFMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    )
    app.add_middleware(RequestContextMiddleware)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness: the database and Redis both answer."""
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            await redis_ready()
        except (SQLAlchemyError, RedisError) as exc:
            log.warning("ready.failed", error=type(exc).__name__)
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return {"status": "ready"}

    @app.get("/metrics", tags=["System"], response_class=PlainTextResponse)
    async def prometheus_metrics():
        return metrics.to_prometheus()

    @app.on_event("startup")
    async def on_startup():
        configure_logging(settings.log_level, settings.log_format)
        log.info("tenantgate.starting", divergence_policy=settings.divergence_policy)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("tenantgate.stopping")
        await close_redis()

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run("tenantgate.main:app", host=settings.host, port=settings.port)
