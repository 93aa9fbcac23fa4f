"""FunnelCatalog: loads YAML funnel manifests into ``FunnelDefinition`` models.

The catalog is loaded once at startup from the ``funnels/`` directory and
provides lookup by slug.  One manifest per file::

    slug: stress-assessment
    version: "1.0.0"
    title: Stress & Resilience
    is_active: true
    steps:
      - id: stress-basics
        order_index: 0
        title: Current stress
        questions:
          - {id: q-stress-level, key: stress_level, label: ..., required: true}
    conditional_logic:
      - id: rule-sleep-detail
        question_id: q-sleep-detail
        type: conditional_required
        conditions: [{question_key: sleep_quality, operator: lte, value: 2}]

Rules name only their target question; the loader attaches each rule to
the step that owns it.  Malformed manifests fail the load with
``ValueError`` so a broken funnel never reaches production traffic.

Usage::

    catalog = FunnelCatalog()       # defaults to funnels/ relative to repo root
    catalog.load()
    funnel = catalog.get("stress-assessment")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from funnel_core.constants import RULE_OPERATORS
from funnel_core.models.funnel import (
    CatalogFunnelRef,
    ConditionalRule,
    FunnelDefinition,
    Question,
    Step,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def find_repo_root(start: Optional[Path] = None) -> Path:
    """Walk upwards from *start* to the directory holding pyproject.toml or .git.

    Falls back to cwd if no marker is found.
    """
    p = (start or Path(__file__).resolve()).parent
    for parent in [p, *p.parents]:
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return Path.cwd()


def load_yaml(path: Path | str) -> Any:
    """Load a single YAML file and return the parsed contents."""
    if isinstance(path, str):
        path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing YAML file: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def parse_manifest(raw: dict[str, Any], *, source: str = "<memory>") -> FunnelDefinition:
    """Turn one parsed manifest dict into a ``FunnelDefinition``.

    Raises:
        ValueError: missing keys, duplicate ids, or rules pointing at
            questions that do not exist.
    """
    if not isinstance(raw, dict) or "slug" not in raw:
        raise ValueError(f"{source}: manifest must be a mapping with a 'slug'")

    slug = raw["slug"]
    steps: list[Step] = []
    owner: dict[str, str] = {}
    for raw_step in raw.get("steps") or []:
        questions = [Question(**q) for q in raw_step.get("questions") or []]
        step = Step(
            id=raw_step["id"],
            order_index=raw_step["order_index"],
            title=raw_step["title"],
            type=raw_step.get("type", "question_step"),
            questions=questions,
        )
        for q in questions:
            owner[q.id] = step.id
        steps.append(step)

    by_id = {s.id: s for s in steps}
    for raw_rule in raw.get("conditional_logic") or []:
        question_id = raw_rule.get("question_id")
        if question_id not in owner:
            raise ValueError(
                f"{source}: rule {raw_rule.get('id')} targets unknown question {question_id}"
            )
        rule = ConditionalRule(step_id=owner[question_id], **raw_rule)
        for cond in rule.conditions:
            if cond.operator not in RULE_OPERATORS:
                logger.warning(
                    "%s: rule %s uses unknown operator %s (always false)",
                    source, rule.id, cond.operator,
                )
        by_id[rule.step_id].rules.append(rule)

    return FunnelDefinition(
        ref=CatalogFunnelRef(slug=slug, version=str(raw.get("version", "1.0.0"))),
        slug=slug,
        title=raw.get("title", slug),
        description=raw.get("description"),
        is_active=raw.get("is_active", True),
        steps=steps,
    )


# ---------------------------------------------------------------------------
# FunnelCatalog
# ---------------------------------------------------------------------------

class FunnelCatalog:
    """Loads every ``*.yaml`` manifest under the funnel directory."""

    def __init__(self, funnel_dir: str | Path | None = None) -> None:
        if funnel_dir is None:
            funnel_dir = find_repo_root() / "funnels"
        self._base = Path(funnel_dir)
        self._funnels: dict[str, FunnelDefinition] = {}

    def load(self) -> None:
        """Parse all manifests.  Call once at startup.

        Raises ``FileNotFoundError`` if the directory is missing and
        ``ValueError`` for malformed or duplicate manifests.
        """
        if not self._base.is_dir():
            raise FileNotFoundError(f"Funnel directory not found: {self._base}")

        funnels: dict[str, FunnelDefinition] = {}
        for path in sorted(self._base.glob("*.yaml")):
            funnel = parse_manifest(load_yaml(path), source=path.name)
            if funnel.slug in funnels:
                raise ValueError(f"{path.name}: duplicate funnel slug {funnel.slug}")
            funnels[funnel.slug] = funnel
        self._funnels = funnels
        logger.info("FunnelCatalog loaded: %d funnels from %s", len(funnels), self._base)

    def add(self, funnel: FunnelDefinition) -> None:
        """Register an already-built definition (used by tests and tooling)."""
        self._funnels[funnel.slug] = funnel

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, slug: str) -> FunnelDefinition | None:
        return self._funnels.get(slug)

    def slugs(self) -> list[str]:
        return sorted(self._funnels)

    def owner_of_step(self, step_id: str) -> str | None:
        """Slug of the catalog funnel that contains ``step_id``, if any."""
        for slug, funnel in self._funnels.items():
            if funnel.get_step(step_id) is not None:
                return slug
        return None
