"""Tests for RuleEvaluator: condition operators, AND/OR logic and
requiredness/visibility derived from conditional rules.
"""

import logging

import pytest

from funnel_core.evaluator import RuleEvaluator
from funnel_core.models.funnel import Condition, ConditionalRule, Question, Step


@pytest.fixture
def evaluator():
    return RuleEvaluator()


def cond(key, op, value=None, values=None):
    return Condition(question_key=key, operator=op, value=value, values=values)


# =====================================================================
# Single conditions
# =====================================================================


class TestOperators:
    def test_eq_and_neq(self, evaluator):
        assert evaluator.evaluate([cond("smoker", "eq", True)], "AND", {"smoker": True})
        assert not evaluator.evaluate([cond("smoker", "eq", True)], "AND", {"smoker": False})
        assert evaluator.evaluate([cond("sex", "neq", "female")], "AND", {"sex": "male"})

    @pytest.mark.parametrize(
        "op, answer, expected",
        [
            ("gt", 66, True),
            ("gt", 65, False),
            ("gte", 65, True),
            ("lt", 64, True),
            ("lte", 65, True),
            ("lte", 66, False),
        ],
    )
    def test_numeric_operators(self, evaluator, op, answer, expected):
        assert evaluator.evaluate([cond("age", op, 65)], "AND", {"age": answer}) is expected

    def test_numeric_strings_are_coerced(self, evaluator):
        assert evaluator.evaluate([cond("age", "gte", "65")], "AND", {"age": "70"})

    def test_non_numeric_answer_fails_numeric_comparison(self, evaluator):
        assert not evaluator.evaluate([cond("age", "gte", 65)], "AND", {"age": "old"})

    def test_in_matches_scalar_answer(self, evaluator):
        c = cond("activity_level", "in", values=["sedentary", "light"])
        assert evaluator.evaluate([c], "AND", {"activity_level": "light"})
        assert not evaluator.evaluate([c], "AND", {"activity_level": "vigorous"})

    def test_in_matches_list_answer_on_overlap(self, evaluator):
        c = cond("symptoms", "in", values=["cough", "fever"])
        assert evaluator.evaluate([c], "AND", {"symptoms": ["rash", "fever"]})
        assert not evaluator.evaluate([c], "AND", {"symptoms": ["rash"]})

    def test_unanswered_question_never_matches(self, evaluator):
        assert not evaluator.evaluate([cond("smoker", "neq", True)], "AND", {})
        assert not evaluator.evaluate([cond("smoker", "eq", None)], "AND", {"smoker": None})

    def test_unknown_operator_is_false_and_logged(self, evaluator, caplog):
        with caplog.at_level(logging.WARNING, logger="funnel_core.evaluator"):
            assert not evaluator.evaluate([cond("age", "between", 65)], "AND", {"age": 70})
        assert "Unknown condition operator" in caplog.text

    def test_in_without_values_is_false_and_logged(self, evaluator, caplog):
        with caplog.at_level(logging.WARNING, logger="funnel_core.evaluator"):
            assert not evaluator.evaluate([cond("sex", "in")], "AND", {"sex": "male"})
        assert "without values" in caplog.text


# =====================================================================
# Logic
# =====================================================================


class TestLogic:
    def test_and_requires_every_condition(self, evaluator):
        """age >= 65 AND activity_level in [sedentary, light]."""
        conditions = [
            cond("age", "gte", 65),
            cond("activity_level", "in", values=["sedentary", "light"]),
        ]
        assert evaluator.evaluate(
            conditions, "AND", {"age": 70, "activity_level": "sedentary"}
        )
        assert not evaluator.evaluate(
            conditions, "AND", {"age": 60, "activity_level": "sedentary"}
        )
        assert not evaluator.evaluate(conditions, "AND", {"age": 70})

    def test_or_requires_any_condition(self, evaluator):
        conditions = [cond("sleep_quality", "lte", 2), cond("stress_level", "gte", 8)]
        assert evaluator.evaluate(conditions, "OR", {"stress_level": 9})
        assert evaluator.evaluate(conditions, "OR", {"sleep_quality": 1})
        assert not evaluator.evaluate(conditions, "OR", {"sleep_quality": 4, "stress_level": 3})

    def test_empty_and_is_true_empty_or_is_false(self, evaluator):
        assert evaluator.evaluate([], "AND", {}) is True
        assert evaluator.evaluate([], "OR", {}) is False

    def test_logic_is_case_insensitive(self, evaluator):
        assert evaluator.evaluate([cond("a", "eq", 1), cond("b", "eq", 1)], "or", {"a": 1})


# =====================================================================
# Step-level derivations
# =====================================================================


def _step(rules):
    return Step(
        id="s1",
        order_index=0,
        title="Step",
        questions=[
            Question(id="q-smoker", key="smoker", label="Smoker?", required=True),
            Question(id="q-cigs", key="cigs", label="Cigarettes", order_index=1),
            Question(id="q-notes", key="notes", label="Notes", order_index=2),
        ],
        rules=rules,
    )


def _rule(rule_id, question_id, rule_type, active=True):
    return ConditionalRule(
        id=rule_id,
        question_id=question_id,
        step_id="s1",
        type=rule_type,
        conditions=[cond("smoker", "eq", True)],
        active=active,
    )


class TestRequiredQuestions:
    def test_static_requiredness_only_without_rules(self, evaluator):
        step = _step([])
        assert [q.key for q in evaluator.required_questions(step, {})] == ["smoker"]

    def test_conditional_required_adds_question_when_rule_fires(self, evaluator):
        step = _step([_rule("r1", "q-cigs", "conditional_required")])
        assert [q.key for q in evaluator.required_questions(step, {"smoker": True})] == [
            "smoker",
            "cigs",
        ]
        assert [q.key for q in evaluator.required_questions(step, {"smoker": False})] == [
            "smoker"
        ]

    def test_inactive_rule_is_ignored(self, evaluator):
        step = _step([_rule("r1", "q-cigs", "conditional_required", active=False)])
        assert [q.key for q in evaluator.required_questions(step, {"smoker": True})] == [
            "smoker"
        ]

    def test_visibility_rule_does_not_change_requiredness(self, evaluator):
        step = _step([_rule("r1", "q-cigs", "conditional_visible")])
        assert [q.key for q in evaluator.required_questions(step, {"smoker": True})] == [
            "smoker"
        ]


class TestVisibleQuestions:
    def test_ungated_questions_are_visible(self, evaluator):
        step = _step([])
        assert len(evaluator.visible_questions(step, {})) == 3

    def test_gated_question_visible_only_while_rule_fires(self, evaluator):
        step = _step([_rule("r1", "q-cigs", "conditional_visible")])
        assert "cigs" not in [q.key for q in evaluator.visible_questions(step, {})]
        assert "cigs" in [q.key for q in evaluator.visible_questions(step, {"smoker": True})]
