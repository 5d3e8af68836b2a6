"""
Estimation Agent.

Chooses an estimator for the identified adjustment set, generates the code,
runs it when a dataset is connected and records the resulting estimate.
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field, field_validator

from ..errors import ServiceInvocationError
from ..models import AgentResult, CamelModel, CausalEstimate, SharedContext, Stage, Task
from ..parsing import extract_code_block, extract_field, extract_list, split_lines
from ..prompts import ESTIMATION_SYSTEM_PROMPT
from .base import NO_CODE, BaseStageAgent

METHOD_ALIASES: Dict[str, str] = {
    "regression": "regression",
    "ols": "regression",
    "linear": "regression",
    "matching": "matching",
    "psm": "matching",
    "propensity score matching": "matching",
    "ipw": "ipw",
    "iptw": "ipw",
    "inverse probability": "ipw",
    "weighting": "ipw",
    "doubly robust": "doubly_robust",
    "aipw": "doubly_robust",
    "dr": "doubly_robust",
}


def normalise_method(value: Optional[str]) -> str:
    lowered = (value or "").strip().lower().replace("-", " ").replace("_", " ")
    if not lowered:
        return "regression"
    if lowered in METHOD_ALIASES:
        return METHOD_ALIASES[lowered]
    for key, method in METHOD_ALIASES.items():
        if len(key) > 3 and key in lowered:
            return method
    return lowered.replace(" ", "_")


def _as_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) or math.isinf(number) else number


class EstimateFields(CamelModel):
    effect: Optional[float] = None
    standard_error: Optional[float] = None
    confidence_interval: Optional[Tuple[float, float]] = None
    p_value: Optional[float] = None


class EstimationReply(CamelModel):
    method: Optional[str] = None
    python_code: Optional[str] = None
    explanation: str = ""
    interpretation: str = ""
    diagnostics: List[str] = Field(default_factory=list)
    limitations: List[str] = Field(default_factory=list)
    estimate: Optional[EstimateFields] = None

    @field_validator("diagnostics", "limitations", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value or []]


class EstimationAgent(BaseStageAgent):
    stage = Stage.ESTIMATION
    name = "Estimation Agent"
    reads = ("treatment", "outcome", "adjustment_set", "dataset")
    writes = ("estimate",)
    system_prompt = ESTIMATION_SYSTEM_PROMPT
    reply_schema = EstimationReply
    remediation = "Check the adjustment set and dataset, then try estimation again"

    def check_inputs(self, task: Task, context: SharedContext) -> Optional[AgentResult]:
        if not context.treatment or not context.outcome:
            return self.error_result(
                "Treatment and outcome must be defined before estimation",
                "Complete formulation first",
            )
        if not context.adjustment_set:
            return self.iteration_result(
                {"adjustment_set": []},
                "No adjustment set has been identified yet; estimating now would ignore confounding",
                "Run the Identification stage to choose an adjustment set",
            )
        return None

    def build_prompt(self, task: Task, context: SharedContext) -> str:
        dataset = context.dataset
        dataset_info = (
            f"Dataset available as `df`: {dataset.rows} rows, columns: {', '.join(dataset.columns)}"
            if dataset
            else "Dataset: Not yet loaded (generate code the user can run later)"
        )
        requested = task.metadata.get("causal_spec", {}).get("estimation_method") or "choose the most suitable"
        return f"""Estimate the causal effect of {context.treatment} on {context.outcome}.

Adjustment set: {', '.join(context.adjustment_set)}
{dataset_info}
Requested method: {requested}

User request: {task.input}

Return JSON:

{{
  "method": "regression|matching|ipw|doubly_robust",
  "pythonCode": "# uses existing df; set effect, ci_low, ci_high",
  "explanation": "Why this estimator",
  "interpretation": "Plain-language reading of the effect",
  "diagnostics": ["..."],
  "limitations": ["..."],
  "estimate": {{"effect": null, "standardError": null, "confidenceInterval": null, "pValue": null}}
}}"""

    def heuristic_parse(self, text: str, task: Task, context: SharedContext) -> EstimationReply:
        lines = split_lines(text)
        effect = _as_float((extract_field(lines, "effect") or "").split(" ")[0])
        return EstimationReply(
            method=extract_field(lines, "method"),
            python_code=extract_code_block(text) or NO_CODE,
            explanation="Estimation plan extracted with fallback parsing",
            interpretation=extract_field(lines, "interpret") or "",
            limitations=extract_list(lines, "limitation"),
            estimate=EstimateFields(effect=effect) if effect is not None else None,
        )

    async def _read_estimate(self, executor: Any) -> Dict[str, Optional[float]]:
        values: Dict[str, Optional[float]] = {}
        for name in ("effect", "ci_low", "ci_high"):
            try:
                values[name] = _as_float(await executor.get_variable(name))
            except ServiceInvocationError as exc:
                print(f"[EXEC] {self.name}: variable '{name}' unavailable ({exc})")
                values[name] = None
        return values

    async def interpret(
        self,
        reply: EstimationReply,
        task: Task,
        context: SharedContext,
        executor: Any = None,
    ) -> AgentResult:
        method = normalise_method(reply.method)
        code = reply.python_code or NO_CODE
        limitations = list(reply.limitations)
        fields = reply.estimate or EstimateFields()
        effect = fields.effect
        interval = fields.confidence_interval

        execution = await self.run_code(code, executor)
        if execution is not None and execution.success:
            computed = await self._read_estimate(executor)
            if computed["effect"] is not None:
                effect = computed["effect"]
            if computed["ci_low"] is not None and computed["ci_high"] is not None:
                interval = (computed["ci_low"], computed["ci_high"])
        else:
            failure = self.execution_failure(execution)
            if failure is not None:
                print(f"[EXEC] {self.name}: {failure}")
                limitations.append(f"Estimation code failed to run ({failure}); review and run it manually")

        estimate = CausalEstimate(
            effect=effect,
            method=method,
            standard_error=fields.standard_error,
            confidence_interval=interval,
            p_value=fields.p_value,
        )
        data = {
            "method": method,
            "python_code": code,
            "explanation": reply.explanation,
            "interpretation": reply.interpretation,
            "diagnostics": reply.diagnostics,
            "limitations": limitations,
            "estimate": estimate.model_dump(),
            **self.execution_summary(execution),
        }
        return self.success_result(
            data,
            [
                "Review the estimate and its confidence interval",
                "Run sensitivity analysis for unmeasured confounding",
                "Try an alternative estimator to check robustness",
            ],
            {"estimate": estimate},
        )
