"""
Prerequisite gate between the planner and the stage agents.

``check_prerequisites`` is a pure function: it reads the planner result and
the shared context and lists what is missing. A non-empty list means no
stage agent may run this turn.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Tuple

from .context import stage_fields_present
from .models import PlannerResult, SharedContext, Stage

DATASET_MISSING = "dataset needs to be loaded"

STAGE_MISSING = {
    Stage.FORMULATION: "treatment and outcome must be defined",
    Stage.EDA: DATASET_MISSING,
    Stage.DAG: "causal DAG needs to be constructed",
    Stage.IDENTIFICATION: "adjustment set needs to be identified",
    Stage.ESTIMATION: "causal effect needs to be estimated",
}

# Planner-stated prerequisites are free text; only those that name something
# checkable against the context are enforced.
_PLAN_KEYWORDS: Tuple[Tuple[Tuple[str, ...], Callable[[SharedContext], Optional[str]]], ...] = (
    (
        ("dataset", "data loaded", "load data", "csv"),
        lambda ctx: None if ctx.dataset is not None else DATASET_MISSING,
    ),
    (
        ("variable", "treatment", "outcome", "formulat"),
        lambda ctx: None if stage_fields_present(ctx, Stage.FORMULATION) else STAGE_MISSING[Stage.FORMULATION],
    ),
    (
        ("dag", "causal graph"),
        lambda ctx: None if ctx.dag is not None else STAGE_MISSING[Stage.DAG],
    ),
    (
        ("adjustment set", "identif"),
        lambda ctx: None if ctx.adjustment_set else STAGE_MISSING[Stage.IDENTIFICATION],
    ),
)


def _plan_item_missing(item: str, context: SharedContext) -> Optional[str]:
    lowered = item.lower()
    for keywords, check in _PLAN_KEYWORDS:
        if any(k in lowered for k in keywords):
            return check(context)
    return None


def check_prerequisites(planner_result: PlannerResult, context: SharedContext) -> List[str]:
    """Missing preconditions for ``planner_result`` given ``context``, in order, without duplicates."""
    intent = planner_result.intent
    missing: List[str] = []

    def add(item: Optional[str]) -> None:
        if item and item not in missing:
            missing.append(item)

    if intent.requires_dataset and context.dataset is None:
        add(DATASET_MISSING)

    for stage in intent.requires_prior_stages:
        if not stage_fields_present(context, stage):
            add(STAGE_MISSING[stage])

    for item in planner_result.execution_plan.prerequisites:
        add(_plan_item_missing(item, context))

    return missing
