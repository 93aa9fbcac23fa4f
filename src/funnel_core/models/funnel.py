"""Funnel definition models: steps, questions and conditional rules.

A funnel is either stored relationally (legacy funnels) or shipped as a
YAML manifest in the catalog.  Both are mapped into one
:class:`FunnelDefinition` whose ``ref`` records where it came from:

  - ``LegacyFunnelRef``: ``funnel_id`` of the row in ``funnels``
  - ``CatalogFunnelRef``: ``slug`` and ``version`` of the manifest

The ``FunnelRef`` union uses ``kind`` as its discriminator.  Everything
downstream of the resolver works on ``FunnelDefinition`` only.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


# --- Conditional rules ---

class Condition(BaseModel):
    """One comparison against a previously answered question.

    ``in`` compares against ``values``; every other operator uses ``value``.
    """

    question_key: str
    operator: str
    value: Any = None
    values: Optional[list[Any]] = None


class ConditionalRule(BaseModel):
    id: str
    question_id: str
    step_id: str
    type: Literal["conditional_required", "conditional_visible"]
    logic: Literal["AND", "OR"] = "AND"
    conditions: list[Condition] = Field(default_factory=list)
    priority: int = 0
    active: bool = True


# --- Steps and questions ---

class Question(BaseModel):
    id: str
    key: str
    label: str
    type: str = "text"
    required: bool = False
    order_index: int = 0


class Step(BaseModel):
    id: str
    order_index: int
    title: str
    type: str = "question_step"
    questions: list[Question] = Field(default_factory=list)
    # Rules whose target question lives in this step, highest priority first
    rules: list[ConditionalRule] = Field(default_factory=list)

    @property
    def has_questions(self) -> bool:
        return bool(self.questions)

    def get_question(self, question_id: str) -> Question | None:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None


# --- Funnel reference (discriminated union) ---

class LegacyFunnelRef(BaseModel):
    kind: Literal["legacy"] = "legacy"
    funnel_id: uuid.UUID


class CatalogFunnelRef(BaseModel):
    kind: Literal["catalog"] = "catalog"
    slug: str
    version: str


FunnelRef = Annotated[Union[LegacyFunnelRef, CatalogFunnelRef], Field(discriminator="kind")]


class FunnelDefinition(BaseModel):
    """A resolved funnel with its steps in ``order_index`` order.

    Structural invariants are checked on construction: step order indexes,
    step ids and question ids/keys are unique, and every rule targets a
    question of the step it is attached to.
    """

    ref: FunnelRef
    slug: str
    title: str
    description: Optional[str] = None
    is_active: bool = True
    steps: list[Step] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_structure(self) -> "FunnelDefinition":
        self.steps.sort(key=lambda s: s.order_index)

        orders = [s.order_index for s in self.steps]
        if len(orders) != len(set(orders)):
            raise ValueError(f"Funnel {self.slug}: duplicate step order_index")
        step_ids = [s.id for s in self.steps]
        if len(step_ids) != len(set(step_ids)):
            raise ValueError(f"Funnel {self.slug}: duplicate step id")

        seen_ids: set[str] = set()
        seen_keys: set[str] = set()
        for step in self.steps:
            for q in step.questions:
                if q.id in seen_ids or q.key in seen_keys:
                    raise ValueError(
                        f"Funnel {self.slug}: duplicate question {q.id}/{q.key}"
                    )
                seen_ids.add(q.id)
                seen_keys.add(q.key)
            for rule in step.rules:
                if rule.step_id != step.id or step.get_question(rule.question_id) is None:
                    raise ValueError(
                        f"Funnel {self.slug}: rule {rule.id} targets unknown "
                        f"question {rule.question_id} in step {step.id}"
                    )
            step.rules.sort(key=lambda r: r.priority, reverse=True)
        return self

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def get_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_position(self, step_id: str) -> int:
        """0-based position of a step, or -1 if the step is not in this funnel."""
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1

    def next_step(self, step: Step) -> Step | None:
        pos = self.step_position(step.id)
        if pos < 0 or pos + 1 >= len(self.steps):
            return None
        return self.steps[pos + 1]

    def find_question(self, question_id: str) -> tuple[Step, Question] | None:
        for step in self.steps:
            q = step.get_question(question_id)
            if q is not None:
                return step, q
        return None
