"""
Identification Agent: backdoor criterion over the stored DAG.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional

import networkx as nx
from pydantic import Field, field_validator

from ..models import AgentResult, CamelModel, SharedContext, Stage, Task
from ..parsing import extract_field, extract_list, split_lines
from ..prompts import IDENTIFICATION_SYSTEM_PROMPT
from .base import BaseStageAgent
from .dag import find_node, to_graph

_IDENTIFIABLE_RE = re.compile(r"\bidentifiable\b")
_NOT_IDENTIFIABLE_RE = re.compile(r"\b(?:un|non-?|not\s+)identifiable\b")


def _split_names(value: str) -> List[str]:
    return [v.strip(" []'\"") for v in value.split(",") if v.strip(" []'\"")]


class IdentificationReply(CamelModel):
    is_identifiable: bool = False
    criterion: str = "backdoor"
    adjustment_sets: List[List[str]] = Field(default_factory=list)
    recommended_set: List[str] = Field(default_factory=list)
    backdoor_paths: List[str] = Field(default_factory=list)
    explanation: str = ""
    assumptions: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @field_validator("recommended_set", "backdoor_paths", "assumptions", "warnings", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            return _split_names(value)
        return [str(v) for v in value or []]

    @field_validator("adjustment_sets", mode="before")
    @classmethod
    def _nested_sets(cls, value: Any) -> List[List[str]]:
        return [[item] if isinstance(item, str) else list(item or []) for item in value or []]


def backdoor_candidates(context: SharedContext) -> List[str]:
    """Observed common causes of treatment and outcome in the stored DAG."""
    dag = context.dag
    if dag is None:
        return []
    graph = to_graph(dag)
    treatment_id = find_node(dag, "treatment", context.treatment)
    outcome_id = find_node(dag, "outcome", context.outcome)
    if treatment_id is None or outcome_id is None or not nx.is_directed_acyclic_graph(graph):
        return []
    nodes = {node.id: node for node in dag.nodes}
    shared = nx.ancestors(graph, treatment_id) & nx.ancestors(graph, outcome_id)
    return sorted(nodes[n].label for n in shared if n in nodes and nodes[n].observed)


class IdentificationAgent(BaseStageAgent):
    stage = Stage.IDENTIFICATION
    name = "Identification Agent"
    reads = ("dag", "treatment", "outcome")
    writes = ("adjustment_set",)
    system_prompt = IDENTIFICATION_SYSTEM_PROMPT
    reply_schema = IdentificationReply
    remediation = "Review the DAG and try identification again"

    def check_inputs(self, task: Task, context: SharedContext) -> Optional[AgentResult]:
        if context.dag is None or not context.treatment or not context.outcome:
            return self.error_result(
                "A causal DAG with treatment and outcome is required before identification",
                "Complete the DAG Construction stage first",
            )
        return None

    def build_prompt(self, task: Task, context: SharedContext) -> str:
        dag = context.dag
        nodes = "\n".join(
            f"- {n.id} ({n.label}, {n.type}{'' if n.observed else ', unobserved'})" for n in dag.nodes
        )
        edges = "\n".join(f"- {e.source} -> {e.target}" for e in dag.edges)
        return f"""Determine whether the effect of {context.treatment} on {context.outcome} is identifiable.

Nodes:
{nodes}

Edges:
{edges}

Common causes found in the graph: {', '.join(backdoor_candidates(context)) or 'none'}

Return JSON:

{{
  "isIdentifiable": true,
  "criterion": "backdoor|frontdoor|iv|none",
  "adjustmentSets": [["var1", "var2"]],
  "recommendedSet": ["var1", "var2"],
  "backdoorPaths": ["treatment <- var1 -> outcome"],
  "explanation": "How the criterion is satisfied",
  "assumptions": ["..."],
  "warnings": ["..."]
}}"""

    def heuristic_parse(self, text: str, task: Task, context: SharedContext) -> IdentificationReply:
        lines = split_lines(text)
        lowered = (text or "").lower()
        identifiable = bool(_IDENTIFIABLE_RE.search(lowered)) and not _NOT_IDENTIFIABLE_RE.search(lowered)
        recommended = _split_names(extract_field(lines, "recommended") or extract_field(lines, "adjustment") or "")
        return IdentificationReply(
            is_identifiable=identifiable,
            adjustment_sets=[recommended] if recommended else [],
            recommended_set=recommended,
            explanation="Identification extracted with fallback parsing",
            warnings=extract_list(lines, "warning"),
        )

    async def interpret(
        self,
        reply: IdentificationReply,
        task: Task,
        context: SharedContext,
        executor: Any = None,
    ) -> AgentResult:
        graph_candidates = backdoor_candidates(context)
        warnings = list(reply.warnings)
        chosen = {v.lower() for v in reply.recommended_set}
        missing = [c for c in graph_candidates if c.lower() not in chosen]
        if reply.is_identifiable and reply.criterion == "backdoor" and missing:
            warnings.append(f"Common causes in the DAG not adjusted for: {', '.join(missing)}")

        data = {
            "is_identifiable": reply.is_identifiable,
            "criterion": reply.criterion,
            "adjustment_sets": reply.adjustment_sets,
            "recommended_set": reply.recommended_set,
            "backdoor_paths": reply.backdoor_paths,
            "graph_candidates": graph_candidates,
            "explanation": reply.explanation,
            "assumptions": reply.assumptions,
            "warnings": warnings,
        }

        if not reply.is_identifiable:
            return self.iteration_result(
                data,
                "Causal effect is not identifiable with the current DAG",
                "Revise the DAG or consider alternative identification strategies (IV, front-door)",
            )

        updates = {"adjustment_set": reply.recommended_set} if reply.recommended_set else {}
        if warnings:
            return self.iteration_result(
                data,
                f"Identification raised {len(warnings)} warning(s)",
                "Review the warnings before proceeding to estimation",
                updates=updates,
            )

        return self.success_result(
            data,
            ["Review the recommended adjustment set", "Proceed to Estimation"],
            updates,
        )
