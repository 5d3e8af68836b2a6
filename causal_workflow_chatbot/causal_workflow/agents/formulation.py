"""
Problem Formulation Agent.

Turns a research question into treatment / outcome / population plus the
issues that threaten causal interpretation.
"""

from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import Field, field_validator

from ..models import AgentResult, CamelModel, SharedContext, Stage, Task
from ..parsing import extract_field, extract_list, split_lines
from ..prompts import FORMULATION_SYSTEM_PROMPT
from .base import BaseStageAgent


class FormulationReply(CamelModel):
    treatment: Optional[str] = None
    outcome: Optional[str] = None
    population: Optional[str] = None
    confounders: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    feasibility: Literal["HIGH", "MEDIUM", "LOW"] = "MEDIUM"
    refined_question: Optional[str] = None

    @field_validator("feasibility", mode="before")
    @classmethod
    def _normalise_feasibility(cls, value: Any) -> str:
        upper = str(value or "").strip().upper()
        return upper if upper in {"HIGH", "MEDIUM", "LOW"} else "MEDIUM"

    @field_validator("confounders", "issues", "suggestions", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return [value]
        return list(value or [])


class FormulationAgent(BaseStageAgent):
    stage = Stage.FORMULATION
    name = "Problem Formulation Agent"
    reads = ()
    writes = (
        "treatment",
        "outcome",
        "confounders",
        "extras.population",
        "extras.research_question",
    )
    system_prompt = FORMULATION_SYSTEM_PROMPT
    reply_schema = FormulationReply
    remediation = "Check that the research question is clearly stated and try again"

    def build_prompt(self, task: Task, context: SharedContext) -> str:
        question = str(task.input or "")
        known = ""
        if context.dataset:
            known = f"\nAvailable dataset columns: {', '.join(context.dataset.columns)}\n"
        return f"""Analyze this research question from a causal inference perspective:

"{question}"
{known}
Provide a structured analysis in the following JSON format:

{{
  "treatment": "The intervention or exposure (X)",
  "outcome": "The result or effect being measured (Y)",
  "population": "The target population (P)",
  "confounders": ["Variables plausibly affecting both X and Y"],
  "issues": ["Potential causal inference concerns"],
  "suggestions": ["Specific recommendations to improve the question"],
  "feasibility": "HIGH|MEDIUM|LOW",
  "refinedQuestion": "A more precise version of the research question"
}}"""

    def heuristic_parse(self, text: str, task: Task, context: SharedContext) -> FormulationReply:
        lines = split_lines(text)
        hint = task.metadata.get("causal_spec") or {}
        return FormulationReply(
            treatment=extract_field(lines, "treatment") or hint.get("treatment"),
            outcome=extract_field(lines, "outcome") or hint.get("outcome"),
            population=extract_field(lines, "population"),
            confounders=extract_list(lines, "confounder"),
            issues=extract_list(lines, "issues", "issue"),
            suggestions=extract_list(lines, "suggestions", "suggestion"),
            refined_question=extract_field(lines, "refined"),
        )

    async def interpret(
        self,
        reply: FormulationReply,
        task: Task,
        context: SharedContext,
        executor: Any = None,
    ) -> AgentResult:
        question = str(task.input or "")
        refined = reply.refined_question or question
        data = {
            "treatment": reply.treatment,
            "outcome": reply.outcome,
            "population": reply.population or "General population",
            "confounders": reply.confounders,
            "issues": reply.issues,
            "suggestions": reply.suggestions,
            "feasibility": reply.feasibility,
            "refined_question": refined,
            "summary": self._summary(reply, refined),
        }

        if not reply.treatment or not reply.outcome:
            return self.iteration_result(
                data,
                "Could not identify both a treatment and an outcome in the question",
                'Rephrase as "Does <treatment> affect <outcome>?"',
            )

        updates = {
            "treatment": reply.treatment,
            "outcome": reply.outcome,
            "extras.population": data["population"],
            "extras.research_question": refined,
        }
        if reply.confounders:
            updates["confounders"] = reply.confounders

        critical = [issue for issue in reply.issues if "critical" in issue.lower()]
        if critical and reply.feasibility == "LOW":
            return self.iteration_result(
                data,
                "Research question has critical issues that may prevent causal analysis",
                "Refine the question based on the suggestions or choose a different question",
                updates=updates,
            )

        return self.success_result(
            data,
            [
                "Proceed to Exploratory Data Analysis (EDA)",
                "Review extracted components and refine if needed",
            ],
            updates,
        )

    @staticmethod
    def _summary(reply: FormulationReply, refined: str) -> str:
        lines = [
            f"**Research question:** {refined}",
            f"**Treatment:** {reply.treatment or 'Not specified'}",
            f"**Outcome:** {reply.outcome or 'Not specified'}",
            f"**Population:** {reply.population or 'General population'}",
            f"**Feasibility:** {reply.feasibility}",
        ]
        if reply.confounders:
            lines.append(f"**Candidate confounders:** {', '.join(reply.confounders)}")
        if reply.issues:
            lines.append("**Issues:**\n" + "\n".join(f"- {i}" for i in reply.issues))
        if reply.suggestions:
            lines.append("**Suggestions:**\n" + "\n".join(f"- {s}" for s in reply.suggestions))
        return "\n".join(lines)
