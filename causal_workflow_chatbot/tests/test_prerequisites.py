"""
Tests for the prerequisite gate between planner and stage agents.
"""

import pytest

from causal_workflow.models import (
    DatasetInfo,
    ExecutionPlan,
    PlannerIntent,
    PlannerResult,
    SharedContext,
    Stage,
)
from causal_workflow.planner import fallback_analysis
from causal_workflow.prerequisites import DATASET_MISSING, STAGE_MISSING, check_prerequisites


def _plan(intent_type="estimation", requires_dataset=False, prior=(), prerequisites=()):
    return PlannerResult(
        intent=PlannerIntent(type=intent_type, requires_dataset=requires_dataset, requires_prior_stages=list(prior)),
        execution_plan=ExecutionPlan(prerequisites=list(prerequisites)),
    )


class TestCheckPrerequisites:

    def test_estimation_on_empty_context_lists_formulation_once(self, empty_context):
        plan = fallback_analysis("estimate the effect", empty_context)
        assert check_prerequisites(plan, empty_context) == ["treatment and outcome must be defined"]

    def test_nothing_missing(self, context_with_dataset):
        plan = _plan("eda", requires_dataset=True, prior=[Stage.FORMULATION], prerequisites=["Dataset loaded"])
        assert check_prerequisites(plan, context_with_dataset) == []

    def test_dataset_listed_first(self, empty_context):
        plan = _plan("eda", requires_dataset=True, prior=[Stage.FORMULATION])
        assert check_prerequisites(plan, empty_context) == [DATASET_MISSING, STAGE_MISSING[Stage.FORMULATION]]

    def test_prior_stages_in_order(self, formulated_context):
        plan = _plan(prior=[Stage.DAG, Stage.IDENTIFICATION])
        assert check_prerequisites(plan, formulated_context) == [
            "causal DAG needs to be constructed",
            "adjustment set needs to be identified",
        ]

    @pytest.mark.parametrize(
        "item,expected",
        [
            ("Dataset loaded", DATASET_MISSING),
            ("Variables defined", STAGE_MISSING[Stage.FORMULATION]),
            ("A causal graph exists", STAGE_MISSING[Stage.DAG]),
            ("Adjustment set identified", STAGE_MISSING[Stage.IDENTIFICATION]),
        ],
    )
    def test_plan_prerequisites_are_checked(self, item, expected, empty_context):
        assert check_prerequisites(_plan(prerequisites=[item]), empty_context) == [expected]

    def test_unknown_plan_prerequisites_are_ignored(self, empty_context):
        plan = _plan(prerequisites=["A cup of coffee", "Good intentions"])
        assert check_prerequisites(plan, empty_context) == []

    def test_empty_adjustment_set_counts_as_missing(self, formulated_context):
        context = formulated_context.model_copy(update={"adjustment_set": []})
        assert check_prerequisites(_plan(prior=[Stage.IDENTIFICATION]), context) == [
            STAGE_MISSING[Stage.IDENTIFICATION]
        ]

    def test_is_pure(self, empty_context):
        plan = _plan("eda", requires_dataset=True, prior=[Stage.FORMULATION])
        before = empty_context.model_dump()
        first = check_prerequisites(plan, empty_context)
        second = check_prerequisites(plan, empty_context)
        assert first == second
        assert empty_context.model_dump() == before

    def test_dataset_satisfies_eda_stage(self):
        context = SharedContext(dataset=DatasetInfo(name="d.csv", rows=3, columns=["a"]))
        assert check_prerequisites(_plan(prior=[Stage.EDA]), context) == []
