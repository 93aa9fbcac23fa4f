"""Funnel definition endpoints: what clients render before starting."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_core.catalog import FunnelCatalog
from funnel_core.engine import AssessmentEngine
from funnel_core.models.funnel import FunnelDefinition

from funnel_server.dependencies import get_assessment_engine, get_catalog, get_db

router = APIRouter(tags=["funnels"])


@router.get("/funnels")
async def list_catalog_funnels(
    catalog: FunnelCatalog = Depends(get_catalog),
) -> list[str]:
    """Slugs of every funnel shipped in the YAML catalog."""
    return catalog.slugs()


@router.get("/funnels/{slug}/definition")
async def get_funnel_definition(
    slug: str,
    db: AsyncSession = Depends(get_db),
    engine: AssessmentEngine = Depends(get_assessment_engine),
) -> FunnelDefinition:
    """Resolved funnel (legacy tables first, then catalog).  404 if unknown."""
    return await engine.get_definition(db, slug)
