"""
EDA Agent: causal-aware exploratory checks (positivity, balance, missing data).
"""

from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import Field, field_validator

from ..models import AgentResult, AssumptionViolation, CamelModel, SharedContext, Stage, Task
from ..parsing import extract_code_block, extract_list, split_lines
from ..prompts import EDA_SYSTEM_PROMPT
from .base import NO_CODE, BaseStageAgent


class EDACheck(CamelModel):
    name: str
    type: str = "distribution"
    status: Literal["pass", "warning", "fail"] = "warning"
    details: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, value: Any) -> str:
        lowered = str(value or "").strip().lower()
        return lowered if lowered in {"pass", "warning", "fail"} else "warning"


class EDAReply(CamelModel):
    checks: List[EDACheck] = Field(default_factory=list)
    violations: List[AssumptionViolation] = Field(default_factory=list)
    python_code: Optional[str] = None
    summary: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)


class EDAAgent(BaseStageAgent):
    stage = Stage.EDA
    name = "EDA Agent"
    reads = ("treatment", "outcome", "confounders", "dataset")
    writes = ("extras.violations", "extras.eda_checks")
    system_prompt = EDA_SYSTEM_PROMPT
    reply_schema = EDAReply
    remediation = "Ensure dataset information is available and try again"

    def check_inputs(self, task: Task, context: SharedContext) -> Optional[AgentResult]:
        if not context.treatment or not context.outcome:
            return self.error_result(
                "Treatment and outcome must be defined before EDA",
                "Complete the Problem Formulation stage first",
            )
        return None

    def build_prompt(self, task: Task, context: SharedContext) -> str:
        treatment, outcome = context.treatment, context.outcome
        confounders = context.confounders
        dataset = context.dataset
        if dataset:
            dataset_info = (
                "Dataset available as `df` (already loaded):\n"
                f"- Shape: {dataset.rows} rows x {len(dataset.columns)} columns\n"
                f"- Columns: {', '.join(dataset.columns)}"
            )
        else:
            dataset_info = "Dataset: Not yet loaded"

        return f"""Perform causal-aware EDA for:

Treatment: {treatment}
Outcome: {outcome}
Confounders: {', '.join(confounders) if confounders else 'To be determined'}
{dataset_info}

User request: {task.input}

Check positivity/overlap, balance (SMD), missing data and distributions.
Return JSON:

{{
  "checks": [{{"name": "...", "type": "positivity|balance|missing_data|overlap|distribution", "status": "pass|warning|fail", "details": "..."}}],
  "violations": [{{"assumption": "...", "severity": "critical|moderate|minor", "description": "...", "suggestedAction": "..."}}],
  "pythonCode": "# uses existing df",
  "summary": "Brief summary of findings",
  "recommendations": ["..."]
}}"""

    def heuristic_parse(self, text: str, task: Task, context: SharedContext) -> EDAReply:
        lines = split_lines(text)
        # violations only come from structured replies
        return EDAReply(
            checks=[
                EDACheck(
                    name="Basic EDA",
                    status="warning",
                    details="Fallback parsing used - review the response manually",
                )
            ],
            violations=[],
            python_code=extract_code_block(text) or NO_CODE,
            summary="EDA analysis completed with fallback parsing",
            recommendations=extract_list(lines, "recommendation") or [
                "Review the agent response and generated code manually"
            ],
        )

    async def interpret(
        self,
        reply: EDAReply,
        task: Task,
        context: SharedContext,
        executor: Any = None,
    ) -> AgentResult:
        violations = list(reply.violations)
        code = reply.python_code or NO_CODE

        execution = await self.run_code(code, executor)
        diagnostics: List[str] = []
        failure = self.execution_failure(execution)
        if failure is not None:
            print(f"[EXEC] {self.name}: {failure}")
            violations.append(
                AssumptionViolation(
                    assumption="Code Execution",
                    severity="moderate",
                    description=f"Failed to execute EDA code: {failure.name}",
                    suggested_action="Check data availability and column names",
                )
            )
            diagnostics.append(f"Execution failed: {failure}")

        data = {
            "checks": [c.model_dump() for c in reply.checks],
            "violations": [v.model_dump() for v in violations],
            "python_code": code,
            "summary": reply.summary or "EDA analysis completed",
            "recommendations": reply.recommendations,
            **self.execution_summary(execution),
        }
        updates = {
            "extras.violations": data["violations"],
            "extras.eda_checks": data["checks"],
        }

        critical = [v for v in violations if v.severity == "critical"]
        if critical:
            result = self.iteration_result(
                data,
                f"Found {len(critical)} critical assumption violation(s)",
                "Address data quality issues before proceeding to causal analysis",
                updates=updates,
            )
            return result.model_copy(update={"diagnostics": diagnostics})

        if execution is not None and execution.success:
            next_steps = [
                "Review the analysis output above",
                "Address any warnings before proceeding",
                "Continue to DAG construction",
            ]
        else:
            next_steps = [
                "Copy and run the generated code in your notebook",
                "Review the output and address any warnings",
                "Continue to DAG construction",
            ]
        result = self.success_result(data, next_steps, updates)
        return result.model_copy(update={"diagnostics": diagnostics})
