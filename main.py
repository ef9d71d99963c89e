"""
CommerceHub - Commerce ingestion and reconciliation service
FastAPI Application Entry Point
"""
import uvicorn
from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
import logging

from commercehub import __version__
from commercehub.core import settings, engine, Base
from commercehub.core.database import dispose_engine
from commercehub.core.logging_config import setup_logging
from commercehub.api.router import api_router
from commercehub.integrations.registry import build_source_registry
from commercehub.jobs import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


# Lifespan for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    Base.metadata.create_all(bind=engine)
    logger.info(f"{settings.APP_NAME} starting on port {settings.APP_PORT}")

    # Long-lived source clients, injected into routes through app.state
    app.state.sources = build_source_registry(settings)

    if settings.SCHEDULER_ENABLED:
        try:
            start_scheduler(app.state.sources)
        except Exception as e:
            logger.warning(f"Could not start scheduler: {e}")

    yield

    stop_scheduler()
    await app.state.sources.aclose()
    dispose_engine()
    logger.info(f"{settings.APP_NAME} shut down")


app = FastAPI(
    title=settings.APP_NAME,
    description="Storefront, POS and booking ingestion with reconciliation",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api")


# Health check
@app.get("/health")
async def health_check():
    return {"status": "healthy", "app": settings.APP_NAME}


@app.get("/health/sources")
async def source_health(request: Request):
    """Connectivity check against every configured source"""
    results = {}
    for name, client in request.app.state.sources.items():
        results[name] = await client.test_connection()
    return {"status": "healthy" if all(results.values()) else "degraded", "sources": results}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.APP_PORT,
        reload=settings.DEBUG
    )
