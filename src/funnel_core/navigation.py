"""Navigator: derives progress through a funnel from the saved answers.

The current step is never trusted from storage: it is recomputed from the
answer set on every request.  It is the first step (by ``order_index``)
with an effectively-required question still unanswered, or the last step
once everything is satisfied.  ``assessments.current_step_id`` is only a
resume hint.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from funnel_core.constants import RULE_TYPE_REQUIRED
from funnel_core.evaluator import RuleEvaluator
from funnel_core.models.assessment import MissingQuestion, StepSummary
from funnel_core.models.funnel import FunnelDefinition, Question, Step


def is_answered(answers: dict[str, Any], question: Question) -> bool:
    return answers.get(question.key) is not None


@dataclass
class StepState:
    """A step evaluated against one answer set."""

    step: Step
    position: int
    required: list[Question] = field(default_factory=list)
    missing: list[Question] = field(default_factory=list)
    visible: list[Question] = field(default_factory=list)
    answered_keys: list[str] = field(default_factory=list)

    @property
    def is_satisfied(self) -> bool:
        return not self.missing

    def summary(self) -> StepSummary:
        return StepSummary(
            step_id=self.step.id,
            title=self.step.title,
            type=self.step.type,
            order_index=self.step.order_index,
            step_index=self.position,
            has_questions=self.step.has_questions,
            required_question_keys=[q.key for q in self.required],
            answered_question_keys=self.answered_keys,
            visible_question_keys=[q.key for q in self.visible],
        )

    def missing_questions(self) -> list[MissingQuestion]:
        return [
            MissingQuestion(
                question_id=q.id,
                question_key=q.key,
                question_label=q.label,
                order_index=q.order_index,
                step_id=self.step.id,
                reason="required" if q.required else RULE_TYPE_REQUIRED,
            )
            for q in self.missing
        ]


class Navigator:
    """Step-level progress built on :class:`RuleEvaluator`."""

    def __init__(self, evaluator: RuleEvaluator | None = None) -> None:
        self._evaluator = evaluator or RuleEvaluator()

    def step_state(
        self, funnel: FunnelDefinition, step: Step, answers: dict[str, Any]
    ) -> StepState:
        required = self._evaluator.required_questions(step, answers)
        return StepState(
            step=step,
            position=funnel.step_position(step.id),
            required=required,
            missing=[q for q in required if not is_answered(answers, q)],
            visible=self._evaluator.visible_questions(step, answers),
            answered_keys=[q.key for q in step.questions if is_answered(answers, q)],
        )

    def current_step(
        self, funnel: FunnelDefinition, answers: dict[str, Any]
    ) -> StepState | None:
        """First unsatisfied step, else the last step.  None for an empty funnel."""
        last: StepState | None = None
        for step in funnel.steps:
            last = self.step_state(funnel, step, answers)
            if not last.is_satisfied:
                return last
        return last

    def missing_questions(
        self, funnel: FunnelDefinition, answers: dict[str, Any]
    ) -> list[MissingQuestion]:
        """Every unanswered effectively-required question, across all steps."""
        missing: list[MissingQuestion] = []
        for step in funnel.steps:
            missing.extend(self.step_state(funnel, step, answers).missing_questions())
        return missing
