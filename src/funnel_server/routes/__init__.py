"""Route registration: mounts all routers under ``/api/v1``."""

from fastapi import FastAPI

from funnel_server.routes.admin import router as admin_router
from funnel_server.routes.assessments import router as assessments_router
from funnel_server.routes.funnels import router as funnels_router

API_PREFIX = "/api/v1"


def register_routes(app: FastAPI) -> None:
    """Include all sub-routers under the versioned API prefix."""
    app.include_router(funnels_router, prefix=API_PREFIX)
    app.include_router(assessments_router, prefix=API_PREFIX)
    app.include_router(admin_router, prefix=API_PREFIX)
