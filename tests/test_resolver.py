"""Tests for FunnelResolver: legacy tables first, then the YAML catalog."""

import uuid

import pytest

from helpers.mocks import MockAssessmentRow, make_legacy_funnel

from funnel_core.errors import NotFoundError
from funnel_core.evaluator import RuleEvaluator
from funnel_core.resolver import legacy_definition


class TestLegacyDefinition:
    def test_maps_rows_to_definition(self):
        row = make_legacy_funnel()
        funnel = legacy_definition(row)
        assert funnel.ref.kind == "legacy"
        assert funnel.ref.funnel_id == row.id
        assert [s.title for s in funnel.steps] == ["Pain", "Consent"]
        first = funnel.steps[0]
        assert first.id == str(row.steps[0].id)
        assert [q.key for q in first.questions] == ["pain", "pain_detail"]

    def test_unknown_rule_types_are_skipped(self):
        funnel = legacy_definition(make_legacy_funnel())
        rules = funnel.steps[0].rules
        assert len(rules) == 1
        assert rules[0].type == "conditional_required"
        assert rules[0].logic == "AND"

    def test_rules_evaluate_like_catalog_rules(self):
        funnel = legacy_definition(make_legacy_funnel())
        step = funnel.steps[0]
        required = RuleEvaluator().required_questions(step, {"pain": 7})
        assert [q.key for q in required] == ["pain", "pain_detail"]


class TestResolve:
    @pytest.mark.asyncio
    async def test_catalog_funnel(self, resolver, db):
        funnel = await resolver.resolve(db, "test-funnel")
        assert funnel.ref.kind == "catalog"

    @pytest.mark.asyncio
    async def test_legacy_takes_precedence(self, resolver, funnel_repo, db):
        funnel_repo.funnels.append(make_legacy_funnel("test-funnel"))
        funnel = await resolver.resolve(db, "test-funnel")
        assert funnel.ref.kind == "legacy"

    @pytest.mark.asyncio
    async def test_unknown_slug(self, resolver, db):
        with pytest.raises(NotFoundError):
            await resolver.resolve(db, "nope")

    @pytest.mark.asyncio
    async def test_assessment_pinned_to_legacy_funnel(self, resolver, funnel_repo, db):
        row = make_legacy_funnel()
        funnel_repo.funnels.append(row)
        assessment = MockAssessmentRow(
            patient_id="p", funnel_slug="legacy-funnel", funnel_id=row.id
        )
        funnel = await resolver.resolve_for_assessment(db, assessment)
        assert funnel.ref.funnel_id == row.id

    @pytest.mark.asyncio
    async def test_assessment_with_vanished_legacy_funnel(self, resolver, db):
        assessment = MockAssessmentRow(
            patient_id="p", funnel_slug="legacy-funnel", funnel_id=uuid.uuid4()
        )
        with pytest.raises(NotFoundError):
            await resolver.resolve_for_assessment(db, assessment)


class TestStepExistsElsewhere:
    @pytest.mark.asyncio
    async def test_catalog_step_of_other_funnel(self, resolver, funnel, db):
        assert await resolver.step_exists_elsewhere(db, funnel, "other-step")

    @pytest.mark.asyncio
    async def test_unknown_step(self, resolver, funnel, db):
        assert not await resolver.step_exists_elsewhere(db, funnel, "nowhere")

    @pytest.mark.asyncio
    async def test_legacy_step_of_other_funnel(self, resolver, funnel_repo, db):
        mine = make_legacy_funnel("mine")
        theirs = make_legacy_funnel("theirs")
        funnel_repo.funnels.extend([mine, theirs])
        definition = legacy_definition(mine)
        other_step_id = str(theirs.steps[0].id)
        assert await resolver.step_exists_elsewhere(db, definition, other_step_id)
