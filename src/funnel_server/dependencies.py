"""FastAPI dependency injection: DB sessions, core services and caller context.

Each request that touches the database gets a fresh ``AsyncSession`` via
``get_db()``.  The session is committed on success and rolled back on error,
matching the core convention where services and repositories ``flush()``
but never ``commit()``.

Caller identity and correlation id are resolved here and passed explicitly
into the engine; nothing downstream reads request-global state.
"""

import hmac
import uuid
from typing import AsyncGenerator

from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_core.catalog import FunnelCatalog
from funnel_core.constants import IDEMPOTENCY_HEADER
from funnel_core.engine import AssessmentEngine
from funnel_core.errors import AuthenticationRequiredError, ForbiddenError
from funnel_core.idempotency import IdempotencyService
from funnel_core.jobs import ProcessingJobService
from funnel_db.engine import get_session_factory


# ------------------------------------------------------------------
# Database session: transaction boundary lives here
# ------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async DB session; commit on success, rollback on error."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ------------------------------------------------------------------
# Core services: stashed on app.state during lifespan
# ------------------------------------------------------------------

def get_assessment_engine(request: Request) -> AssessmentEngine:
    return request.app.state.engine


def get_idempotency(request: Request) -> IdempotencyService:
    return request.app.state.idempotency


def get_jobs(request: Request) -> ProcessingJobService:
    return request.app.state.jobs


def get_catalog(request: Request) -> FunnelCatalog:
    return request.app.state.catalog


# ------------------------------------------------------------------
# Caller context
# ------------------------------------------------------------------

async def get_user_id(
    request: Request,
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_proxy_secret: str | None = Header(None, alias="X-Proxy-Secret"),
) -> str:
    """Extract the patient identity from the ``X-User-ID`` header.

    Missing header → 401.  When ``TRUSTED_PROXY_SECRET`` is configured the
    request must also carry a matching ``X-Proxy-Secret`` (403 otherwise),
    proving the identity was injected by the gateway and not by a client.
    """
    if not x_user_id:
        raise AuthenticationRequiredError("X-User-ID header is required")

    expected_secret: str | None = request.app.state.settings.trusted_proxy_secret
    if expected_secret:
        if not x_proxy_secret:
            raise ForbiddenError("X-Proxy-Secret header is required")
        # Constant-time comparison
        if not hmac.compare_digest(x_proxy_secret, expected_secret):
            raise ForbiddenError("Invalid proxy secret")

    return x_user_id


async def get_idempotency_key(
    idempotency_key: str | None = Header(None, alias=IDEMPOTENCY_HEADER),
) -> str | None:
    """Opaque client token; blank values count as absent."""
    if idempotency_key is None or not idempotency_key.strip():
        return None
    return idempotency_key.strip()


async def get_correlation_id(
    x_correlation_id: str | None = Header(None, alias="X-Correlation-ID"),
) -> str:
    """Propagate the caller's correlation id or mint a new one."""
    return x_correlation_id or str(uuid.uuid4())
