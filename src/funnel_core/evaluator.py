"""RuleEvaluator: evaluates conditional rules against saved answers.

A rule is a list of conditions combined with ``AND`` (default) or ``OR``.
Each condition compares the answer to one earlier question:

  - ``eq`` / ``neq``: equality against ``value``
  - ``gt`` / ``gte`` / ``lt`` / ``lte``: numeric comparison (numeric strings
    are coerced, anything else fails the comparison)
  - ``in``: membership in ``values``; a list answer matches on overlap

Evaluation is pure and synchronous.  A condition on an unanswered question
is simply false.  An unknown operator, or an ``in`` without ``values``, is
logged and evaluates to false, so a malformed rule never makes a question
required.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from funnel_core.constants import NUMERIC_OPERATORS, RULE_TYPE_REQUIRED, RULE_TYPE_VISIBLE
from funnel_core.models.funnel import Condition, ConditionalRule, Question, Step

logger = logging.getLogger(__name__)


class RuleEvaluator:
    """Evaluates conditions and derives effective requiredness per step."""

    def evaluate(
        self,
        conditions: Iterable[Condition],
        logic: str,
        answers: dict[str, Any],
    ) -> bool:
        """Combine condition results with ``logic``.

        An empty AND is true and an empty OR is false, as with ``all()`` and
        ``any()``.  Any logic other than ``OR`` is treated as ``AND``.
        """
        results = (self._eval_condition(cond, answers) for cond in conditions)
        if (logic or "AND").upper() == "OR":
            return any(results)
        return all(results)

    def rule_fires(self, rule: ConditionalRule, answers: dict[str, Any]) -> bool:
        if not rule.active:
            return False
        return self.evaluate(rule.conditions, rule.logic, answers)

    # ------------------------------------------------------------------
    # Step-level derivations
    # ------------------------------------------------------------------

    def required_questions(self, step: Step, answers: dict[str, Any]) -> list[Question]:
        """Questions of ``step`` that must be answered, in display order.

        A question is effectively required when it is statically required
        or an active ``conditional_required`` rule targeting it fires.
        """
        conditionally_required = {
            rule.question_id
            for rule in step.rules
            if rule.type == RULE_TYPE_REQUIRED and self.rule_fires(rule, answers)
        }
        return [
            q
            for q in step.questions
            if q.required or q.id in conditionally_required
        ]

    def visible_questions(self, step: Step, answers: dict[str, Any]) -> list[Question]:
        """Questions of ``step`` a client should render.

        Questions without an active ``conditional_visible`` rule are always
        visible; questions with one are visible only while it fires.
        """
        gated: dict[str, bool] = {}
        for rule in step.rules:
            if rule.type != RULE_TYPE_VISIBLE or not rule.active:
                continue
            fired = self.evaluate(rule.conditions, rule.logic, answers)
            gated[rule.question_id] = gated.get(rule.question_id, False) or fired
        return [q for q in step.questions if gated.get(q.id, True)]

    # ------------------------------------------------------------------
    # Condition evaluation
    # ------------------------------------------------------------------

    def _eval_condition(self, cond: Condition, answers: dict[str, Any]) -> bool:
        """Evaluate a single condition; unanswered questions never match."""
        answer = answers.get(cond.question_key)
        if answer is None:
            return False

        if cond.operator == "in":
            if cond.values is None:
                logger.warning(
                    "Condition on %s uses 'in' without values", cond.question_key
                )
                return False
            return self._matches_any(answer, cond.values)

        return self._compare(cond.operator, answer, cond.value)

    @staticmethod
    def _matches_any(answer: Any, values: list[Any]) -> bool:
        if isinstance(answer, list):
            return any(a in values for a in answer)
        return answer in values

    @staticmethod
    def _compare(op: str, answer: Any, value: Any) -> bool:
        """Apply a scalar operator to an answer and the expected value."""
        if op == "eq":
            return answer == value

        if op == "neq":
            return answer != value

        if op in NUMERIC_OPERATORS:
            try:
                ans_num = float(answer)
                val_num = float(value)
            except (TypeError, ValueError):
                return False

            if op == "gt":
                return ans_num > val_num
            if op == "gte":
                return ans_num >= val_num
            if op == "lt":
                return ans_num < val_num
            return ans_num <= val_num

        logger.warning("Unknown condition operator: %s", op)
        return False
