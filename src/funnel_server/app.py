"""Application factory and CLI entry point.

``create_app()`` builds the FastAPI application with:
  - Lifespan handler that loads the funnel catalog and builds the core services
  - CORS middleware
  - Global exception handlers (FunnelError → its status, validation → 400)
  - All API routes mounted under ``/api/v1``
  - A ``/health`` endpoint for readiness probes

The ``cli()`` function is the ``funnel-server`` console-script entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from funnel_core.catalog import FunnelCatalog
from funnel_core.engine import AssessmentEngine
from funnel_core.errors import FunnelError
from funnel_core.idempotency import IdempotencyService
from funnel_core.jobs import ProcessingJobService
from funnel_core.resolver import FunnelResolver
from funnel_db.engine import dispose_engine, get_engine

from funnel_server.config import ServerSettings, load_settings
from funnel_server.errors import (
    funnel_error_handler,
    generic_error_handler,
    request_validation_handler,
)
from funnel_server.routes import register_routes

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, catalog: FunnelCatalog) -> None:
    """Wire the core services onto ``app.state`` for dependency injection."""
    jobs = ProcessingJobService()
    app.state.catalog = catalog
    app.state.jobs = jobs
    app.state.engine = AssessmentEngine(FunnelResolver(catalog), jobs)
    app.state.idempotency = IdempotencyService()


# ------------------------------------------------------------------
# Lifespan: runs once at startup/shutdown
# ------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Load the funnel catalog at startup; dispose the DB pool on shutdown."""
    settings: ServerSettings = app.state.settings

    catalog = FunnelCatalog(funnel_dir=settings.funnel_dir)
    catalog.load()
    build_services(app, catalog)

    yield

    await dispose_engine()
    logger.info("Database engine disposed")


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------

def create_app(settings: ServerSettings | None = None) -> FastAPI:
    """Build and return the configured FastAPI application."""
    if settings is None:
        settings = load_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="Funnel Assessment API",
        description="Assessment funnel progression: start/resume, answers, completion",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Read by the lifespan handler and the identity dependencies
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FunnelError, funnel_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_error_handler)

    # --- Health check (outside /api/v1 prefix) ---
    @app.get("/health")
    async def health() -> JSONResponse:
        """Readiness probe: verifies DB connectivity."""
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as exc:
            logger.error("Health check failed: %s", exc)
            return JSONResponse(status_code=503, content={"status": "error"})
        return JSONResponse(content={"status": "ok"})

    register_routes(app)

    return app


# ------------------------------------------------------------------
# Module-level ASGI export (for uvicorn funnel_server.app:app)
# ------------------------------------------------------------------
app = create_app()


# ------------------------------------------------------------------
# CLI entry point
# ------------------------------------------------------------------

def cli() -> None:
    """Console-script entry point: ``funnel-server``."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "funnel_server.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
