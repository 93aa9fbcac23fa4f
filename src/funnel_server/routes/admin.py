"""Admin endpoints: idempotency purge and processing-job sweep.

Protected by ``ADMIN_API_KEY``.  Every request must include an
``X-Admin-Key`` header whose value matches the configured key.  Returns
401 if missing, 403 if wrong or if admin access is not configured.
"""

import hmac

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_core.constants import DEFAULT_SWEEP_LIMIT
from funnel_core.errors import AuthenticationRequiredError, ForbiddenError
from funnel_core.idempotency import IdempotencyService
from funnel_core.jobs import ProcessingJobService
from funnel_core.models.assessment import ApiModel

from funnel_server.config import MAX_SWEEP_LIMIT
from funnel_server.dependencies import (
    get_correlation_id,
    get_db,
    get_idempotency,
    get_jobs,
)

router = APIRouter(prefix="/admin", tags=["admin"])


# ------------------------------------------------------------------
# Auth dependency
# ------------------------------------------------------------------

async def require_admin_key(
    request: Request,
    x_admin_key: str | None = Header(None, alias="X-Admin-Key"),
) -> str:
    expected: str | None = request.app.state.settings.admin_api_key
    if not expected:
        raise ForbiddenError("Admin endpoints are disabled (ADMIN_API_KEY not configured)")
    if not x_admin_key:
        raise AuthenticationRequiredError("X-Admin-Key header is required")
    if not hmac.compare_digest(x_admin_key, expected):
        raise ForbiddenError("Invalid admin key")
    return x_admin_key


# ------------------------------------------------------------------
# Response models
# ------------------------------------------------------------------

class MaintenanceResult(ApiModel):
    affected_rows: int
    action: str
    job_ids: list[str] = []


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("/idempotency/purge")
async def purge_idempotency_keys(
    db: AsyncSession = Depends(get_db),
    idempotency: IdempotencyService = Depends(get_idempotency),
    _admin: str = Depends(require_admin_key),
) -> MaintenanceResult:
    """Delete idempotency records whose TTL has passed."""
    removed = await idempotency.purge_expired(db)
    return MaintenanceResult(affected_rows=removed, action="purge_idempotency")


@router.post("/processing-jobs/sweep")
async def sweep_processing_jobs(
    limit: int = Query(DEFAULT_SWEEP_LIMIT, ge=1, le=MAX_SWEEP_LIMIT),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    jobs: ProcessingJobService = Depends(get_jobs),
    _admin: str = Depends(require_admin_key),
) -> MaintenanceResult:
    """Create missing processing jobs for completed assessments."""
    created = await jobs.sweep_missing_jobs(
        db, limit=limit, correlation_id=correlation_id
    )
    return MaintenanceResult(
        affected_rows=len(created),
        action="sweep_jobs",
        job_ids=[str(job.id) for job in created],
    )
