"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from knowledge_search.api.v1.router import api_router
from knowledge_search.core.config import get_settings
from knowledge_search.core.database import engine
from knowledge_search.observability import RequestLoggingMiddleware, get_metrics_backend, setup_tracing

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    # Startup
    logger.info(f"Starting {settings.app_name} {settings.app_version}")
    yield
    # Shutdown
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

metrics_backend = get_metrics_backend()

app.add_middleware(RequestLoggingMiddleware, metrics=metrics_backend)
setup_tracing(app, settings)

# Include API router
app.include_router(api_router, prefix=settings.api_prefix)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> PlainTextResponse:
    """Prometheus-style metrics endpoint."""
    return PlainTextResponse(metrics_backend.render_prometheus())
