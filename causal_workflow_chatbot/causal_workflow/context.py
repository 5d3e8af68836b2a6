from __future__ import annotations

from typing import Any, Dict, Iterable, List

from .models import SharedContext, Stage


def merge_context(
    context: SharedContext,
    updates: Dict[str, Any],
    allowed: Iterable[str],
) -> SharedContext:
    """
    Return a new SharedContext with ``updates`` applied.

    Only keys listed in ``allowed`` are written; ``extras.<key>`` addresses a
    single entry of the extension map. The input context is never modified.
    """
    allowed_set = set(allowed)
    payload = context.model_dump()
    extras = dict(payload.get("extras") or {})
    dropped: List[str] = []

    for key, value in updates.items():
        if key not in allowed_set:
            dropped.append(key)
            continue
        if key.startswith("extras."):
            extras[key.split(".", 1)[1]] = value
        elif key in SharedContext.model_fields and key != "extras":
            payload[key] = value
        else:
            dropped.append(key)

    if dropped:
        print(f"[WARNING] Dropped undeclared context writes: {', '.join(sorted(dropped))}")

    payload["extras"] = extras
    return SharedContext.model_validate(payload)


def stage_fields_present(context: SharedContext, stage: Stage) -> bool:
    """Whether the fields that define a completed stage are present."""
    if stage == Stage.FORMULATION:
        return bool(context.treatment) and bool(context.outcome)
    if stage == Stage.EDA:
        return context.dataset is not None
    if stage == Stage.DAG:
        return context.dag is not None
    if stage == Stage.IDENTIFICATION:
        return bool(context.adjustment_set)
    if stage == Stage.ESTIMATION:
        return context.estimate is not None
    return False


def summarize_context(context: SharedContext, stage: Stage) -> str:
    dataset = context.dataset
    estimate = context.estimate
    parts = [
        f"Current Stage: {stage.value}",
        f"Treatment: {context.treatment}" if context.treatment else "Treatment: Not defined",
        f"Outcome: {context.outcome}" if context.outcome else "Outcome: Not defined",
        (
            f"Confounders: {', '.join(context.confounders)}"
            if context.confounders
            else "Confounders: Not defined"
        ),
        (
            f"Dataset: {dataset.name} ({dataset.rows} rows, {len(dataset.columns)} columns)"
            if dataset
            else "Dataset: Not loaded"
        ),
        (
            f"DAG: {len(context.dag.nodes)} nodes, {len(context.dag.edges)} edges"
            if context.dag
            else "DAG: Not constructed"
        ),
        (
            f"Adjustment Set: {', '.join(context.adjustment_set)}"
            if context.adjustment_set
            else "Adjustment Set: Not identified"
        ),
        (
            f"Previous Estimate: {estimate.effect} (method: {estimate.method})"
            if estimate
            else "Causal Effect: Not estimated"
        ),
    ]
    return "\n".join(parts)
