"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from provisioner.api.dependencies.services import ServiceContainer
from provisioner.api.middleware.correlation import CorrelationIdMiddleware
from provisioner.api.routes import cluster_routes, health_routes
from provisioner.config import get_settings, Settings
from provisioner.infrastructure.observability.tracing import setup_tracing


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    container = ServiceContainer.get_instance()
    settings = container.settings
    logger.info(
        "application_starting",
        environment=settings.environment.value,
        checkpoint_backend=settings.checkpoint.backend.value,
        debug=settings.debug,
    )
    setup_tracing(settings)
    await container.initialize()

    yield

    logger.info("application_shutting_down")
    await container.close()
    logger.info("application_shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Management Cluster Provisioner",
        description="Checkpointed provisioning of Kubernetes management clusters",
        version="1.0.0",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        openapi_url=f"{settings.api_prefix}/openapi.json",
        lifespan=lifespan,
    )

    # Middleware (order matters - first added = outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    # Routes
    app.include_router(health_routes.router)
    app.include_router(cluster_routes.router, prefix=settings.api_prefix)

    return app
