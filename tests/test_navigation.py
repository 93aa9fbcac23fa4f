"""Tests for Navigator: current step derivation and missing questions."""

import pytest

from funnel_core.models.funnel import CatalogFunnelRef, FunnelDefinition, Step
from funnel_core.navigation import Navigator


@pytest.fixture
def navigator():
    return Navigator()


class TestCurrentStep:
    def test_fresh_assessment_starts_at_first_step(self, navigator, funnel):
        state = navigator.current_step(funnel, {})
        assert state.step.id == "basics"
        assert state.position == 0
        assert [q.key for q in state.missing] == ["age", "smoker"]

    def test_moves_on_once_step_is_satisfied(self, navigator, funnel):
        state = navigator.current_step(funnel, {"age": 40, "smoker": False})
        assert state.step.id == "habits"
        assert state.position == 1

    def test_conditional_requirement_holds_step(self, navigator, funnel):
        answers = {"age": 40, "smoker": True, "activity_level": "light"}
        state = navigator.current_step(funnel, answers)
        assert state.step.id == "habits"
        assert [q.key for q in state.missing] == ["cigarettes_per_day"]

    def test_all_satisfied_lands_on_last_step(self, navigator, funnel):
        answers = {"age": 40, "smoker": False, "activity_level": "light"}
        state = navigator.current_step(funnel, answers)
        assert state.step.id == "extras"
        assert state.is_satisfied

    def test_step_without_questions_is_passed_through(self, navigator):
        funnel = FunnelDefinition(
            ref=CatalogFunnelRef(slug="info", version="1"),
            slug="info",
            title="Info",
            steps=[
                Step(id="intro", order_index=0, title="Intro", type="info_step"),
                Step(id="outro", order_index=1, title="Outro", type="info_step"),
            ],
        )
        assert navigator.current_step(funnel, {}).step.id == "outro"

    def test_empty_funnel_has_no_current_step(self, navigator):
        funnel = FunnelDefinition(
            ref=CatalogFunnelRef(slug="empty", version="1"), slug="empty", title="Empty"
        )
        assert navigator.current_step(funnel, {}) is None


class TestStepSummary:
    def test_summary_reports_keys(self, navigator, funnel):
        answers = {"age": 40}
        summary = navigator.step_state(funnel, funnel.get_step("basics"), answers).summary()
        assert summary.step_id == "basics"
        assert summary.step_index == 0
        assert summary.required_question_keys == ["age", "smoker"]
        assert summary.answered_question_keys == ["age"]
        assert summary.has_questions

    def test_summary_serialises_camel_case(self, navigator, funnel):
        summary = navigator.step_state(funnel, funnel.get_step("basics"), {}).summary()
        dumped = summary.model_dump(by_alias=True)
        assert "stepId" in dumped
        assert "requiredQuestionKeys" in dumped


class TestMissingQuestions:
    def test_lists_every_missing_required_question_in_order(self, navigator, funnel):
        missing = navigator.missing_questions(funnel, {"smoker": True})
        assert [(m.step_id, m.question_key) for m in missing] == [
            ("basics", "age"),
            ("habits", "activity_level"),
            ("habits", "cigarettes_per_day"),
        ]

    def test_none_value_counts_as_unanswered(self, navigator, funnel):
        answers = {"age": None, "smoker": False, "activity_level": "light"}
        missing = navigator.missing_questions(funnel, answers)
        assert [m.question_key for m in missing] == ["age"]

    def test_falsy_values_count_as_answered(self, navigator, funnel):
        answers = {"age": 0, "smoker": False, "activity_level": ""}
        assert navigator.missing_questions(funnel, answers) == []

    def test_reason_distinguishes_rule_driven_requirements(self, navigator, funnel):
        missing = navigator.missing_questions(funnel, {"smoker": True})
        assert {m.question_key: m.reason for m in missing} == {
            "age": "required",
            "activity_level": "required",
            "cigarettes_per_day": "conditional_required",
        }
