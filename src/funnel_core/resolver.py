"""FunnelResolver: turns a funnel slug into one ``FunnelDefinition``.

Two storage shapes exist for the same concept: funnels in the legacy
relational tables and funnels in the YAML catalog.  Lookups try the legacy
tables first, then the catalog.  Everything past the resolver works on the
uniform definition and never branches on the source again.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from funnel_db.models.assessment import Assessment
from funnel_db.models.funnel import Funnel
from funnel_db.repository import FunnelRepository

from funnel_core.catalog import FunnelCatalog
from funnel_core.constants import RULE_TYPE_REQUIRED, RULE_TYPE_VISIBLE
from funnel_core.errors import NotFoundError
from funnel_core.models.funnel import (
    Condition,
    ConditionalRule,
    FunnelDefinition,
    LegacyFunnelRef,
    Question,
    Step,
)

logger = logging.getLogger(__name__)

_KNOWN_RULE_TYPES = {RULE_TYPE_REQUIRED, RULE_TYPE_VISIBLE}


def legacy_definition(row: Funnel) -> FunnelDefinition:
    """Map a ``funnels`` row (with steps, questions, rules loaded) to a definition."""
    steps: list[Step] = []
    for s in row.steps:
        rules = []
        for r in s.rules:
            if r.rule_type not in _KNOWN_RULE_TYPES:
                logger.warning(
                    "Funnel %s: skipping rule %s with unknown type %s",
                    row.slug, r.id, r.rule_type,
                )
                continue
            rules.append(
                ConditionalRule(
                    id=str(r.id),
                    question_id=str(r.question_id),
                    step_id=str(r.step_id),
                    type=r.rule_type,
                    logic=(r.logic or "AND").upper(),
                    conditions=[Condition(**c) for c in r.conditions or []],
                    priority=r.priority,
                    active=r.is_active,
                )
            )
        steps.append(
            Step(
                id=str(s.id),
                order_index=s.order_index,
                title=s.title,
                type=s.step_type,
                questions=[
                    Question(
                        id=str(q.id),
                        key=q.key,
                        label=q.label,
                        type=q.question_type,
                        required=q.is_required,
                        order_index=q.order_index,
                    )
                    for q in s.questions
                ],
                rules=rules,
            )
        )
    return FunnelDefinition(
        ref=LegacyFunnelRef(funnel_id=row.id),
        slug=row.slug,
        title=row.title,
        description=row.description,
        is_active=row.is_active,
        steps=steps,
    )


class FunnelResolver:
    """Resolves funnels from the legacy tables or the YAML catalog."""

    def __init__(self, catalog: FunnelCatalog) -> None:
        self._catalog = catalog
        self._repo = FunnelRepository()

    async def resolve(self, db: AsyncSession, slug: str) -> FunnelDefinition:
        """Resolve a slug, legacy tables first.

        Raises:
            NotFoundError: no funnel with this slug exists in either source.
        """
        row = await self._repo.get_by_slug(db, slug)
        if row is not None:
            return legacy_definition(row)
        funnel = self._catalog.get(slug)
        if funnel is None:
            logger.info("Unknown funnel slug: %s", slug)
            raise NotFoundError("Funnel not found", details={"slug": slug})
        return funnel

    async def resolve_for_assessment(
        self, db: AsyncSession, assessment: Assessment
    ) -> FunnelDefinition:
        """Resolve the funnel an assessment was started against."""
        if assessment.funnel_id is not None:
            row = await self._repo.get_by_id(db, assessment.funnel_id)
            if row is None:
                logger.error(
                    "Assessment %s references missing legacy funnel %s",
                    assessment.id, assessment.funnel_id,
                )
                raise NotFoundError("Funnel not found")
            return legacy_definition(row)
        return await self.resolve(db, assessment.funnel_slug)

    async def step_exists_elsewhere(
        self, db: AsyncSession, funnel: FunnelDefinition, step_id: str
    ) -> bool:
        """True when ``step_id`` is a real step that belongs to a different funnel."""
        owner = self._catalog.owner_of_step(step_id)
        if owner is not None and owner != funnel.slug:
            return True
        row = await self._repo.get_step(db, step_id)
        if row is None:
            return False
        if isinstance(funnel.ref, LegacyFunnelRef):
            return row.funnel_id != funnel.ref.funnel_id
        return True
