"""
Tests for the shared context merge and the AgentResult invariants.
"""

import pytest
from pydantic import ValidationError

from causal_workflow.context import merge_context, stage_fields_present, summarize_context
from causal_workflow.models import AgentResult, CausalEstimate, SharedContext, Stage


class TestMergeContext:

    def test_returns_new_object(self, empty_context):
        merged = merge_context(empty_context, {"treatment": "aspirin"}, ["treatment"])
        assert merged.treatment == "aspirin"
        assert empty_context.treatment is None
        assert merged is not empty_context

    def test_undeclared_keys_are_dropped(self, empty_context):
        merged = merge_context(empty_context, {"treatment": "aspirin", "outcome": "heart_attack"}, ["treatment"])
        assert merged.treatment == "aspirin"
        assert merged.outcome is None

    def test_unknown_fields_are_dropped_even_if_declared(self, empty_context):
        merged = merge_context(empty_context, {"colour": "blue"}, ["colour"])
        assert merged == empty_context

    def test_extras_entries(self, formulated_context):
        merged = merge_context(
            formulated_context,
            {"extras.population": "Adults", "extras.violations": []},
            ["extras.population", "extras.violations"],
        )
        assert merged.extras == {"population": "Adults", "violations": []}
        assert formulated_context.extras == {}

    def test_extras_keep_existing_entries(self):
        context = SharedContext(extras={"population": "Adults"})
        merged = merge_context(context, {"extras.research_question": "Q"}, ["extras.research_question"])
        assert merged.extras == {"population": "Adults", "research_question": "Q"}

    def test_confounders_none_becomes_empty_list(self, formulated_context):
        merged = merge_context(formulated_context, {"confounders": None}, ["confounders"])
        assert merged.confounders == []

    def test_model_values_are_accepted(self, formulated_context):
        estimate = CausalEstimate(effect=-0.05, method="regression")
        merged = merge_context(formulated_context, {"estimate": estimate}, ["estimate"])
        assert merged.estimate == estimate

    def test_empty_updates_leave_context_equal(self, formulated_context):
        assert merge_context(formulated_context, {}, ["treatment"]) == formulated_context


class TestStageFields:

    def test_formulation_needs_both(self):
        assert not stage_fields_present(SharedContext(treatment="aspirin"), Stage.FORMULATION)
        assert stage_fields_present(SharedContext(treatment="a", outcome="b"), Stage.FORMULATION)

    def test_summary_mentions_missing_parts(self, empty_context):
        summary = summarize_context(empty_context, Stage.FORMULATION)
        assert "Treatment: Not defined" in summary
        assert "Dataset: Not loaded" in summary

    def test_summary_mentions_adjustment_set(self, identified_context):
        assert "Adjustment Set: age" in summarize_context(identified_context, Stage.ESTIMATION)


class TestAgentResultInvariants:

    def test_failure_needs_error(self):
        with pytest.raises(ValidationError):
            AgentResult(success=False)

    def test_iteration_needs_feedback(self):
        with pytest.raises(ValidationError):
            AgentResult(success=True, requires_iteration=True)

    def test_plain_success(self):
        result = AgentResult(success=True, data={"x": 1})
        assert result.context_updates == {}
        assert result.suggested_next_steps == []
