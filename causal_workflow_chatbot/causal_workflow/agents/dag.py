"""
DAG Builder Agent.

The model proposes the graph; structure is checked here with networkx rather
than trusting the model's own validation block.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import networkx as nx
from pydantic import Field

from ..models import DAG, AgentResult, CamelModel, DAGEdge, DAGNode, SharedContext, Stage, Task
from ..parsing import split_lines
from ..prompts import DAG_SYSTEM_PROMPT
from .base import BaseStageAgent

_EDGE_LINE_RE = re.compile(r"^\W*([\w][\w .'-]*?)\s*(?:->|→|=>)\s*([\w][\w .'-]*?)\W*$")


class DAGReply(CamelModel):
    nodes: List[DAGNode] = Field(default_factory=list)
    edges: List[DAGEdge] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
    explanation: Optional[str] = None
    suggested_confounders: List[str] = Field(default_factory=list)


def to_graph(dag: DAG) -> nx.DiGraph:
    graph = nx.DiGraph()
    graph.add_nodes_from(node.id for node in dag.nodes)
    graph.add_edges_from((edge.source, edge.target) for edge in dag.edges)
    return graph


def find_node(dag: DAG, role: str, label: Optional[str]) -> Optional[str]:
    for node in dag.nodes:
        if node.type == role or node.id == role:
            return node.id
    if label:
        for node in dag.nodes:
            if node.label.lower() == label.lower():
                return node.id
    return None


def validate_dag(dag: DAG, treatment: Optional[str], outcome: Optional[str]) -> Dict[str, Any]:
    graph = to_graph(dag)
    issues: List[str] = []

    has_no_cycles = nx.is_directed_acyclic_graph(graph)
    if not has_no_cycles:
        issues.append("DAG contains cycles - not a valid causal graph")

    treatment_id = find_node(dag, "treatment", treatment)
    outcome_id = find_node(dag, "outcome", outcome)
    if treatment_id is None:
        issues.append("Treatment node not found in DAG")
    if outcome_id is None:
        issues.append("Outcome node not found in DAG")

    has_path = (
        treatment_id is not None
        and outcome_id is not None
        and nx.has_path(graph, treatment_id, outcome_id)
    )
    if treatment_id is not None and outcome_id is not None and not has_path:
        issues.append("No directed path from treatment to outcome")

    dangling = sorted(
        {e.source for e in dag.edges if e.source not in {n.id for n in dag.nodes}}
        | {e.target for e in dag.edges if e.target not in {n.id for n in dag.nodes}}
    )
    if dangling:
        issues.append(f"Edges reference undeclared nodes: {', '.join(dangling)}")

    return {
        "has_no_cycles": has_no_cycles,
        "has_treatment_outcome_path": has_path,
        "issues": issues,
    }


def render_dag(dag: DAG) -> str:
    labels = {node.id: node.label for node in dag.nodes}
    lines = ["Causal DAG:", ""]
    for edge in dag.edges:
        lines.append(f"  {labels.get(edge.source, edge.source)} → {labels.get(edge.target, edge.target)}")
    return "\n".join(lines)


class DAGAgent(BaseStageAgent):
    stage = Stage.DAG
    name = "DAG Builder Agent"
    reads = ("treatment", "outcome", "confounders")
    writes = ("dag", "confounders")
    system_prompt = DAG_SYSTEM_PROMPT
    reply_schema = DAGReply
    remediation = "Check the research question and try again"

    def check_inputs(self, task: Task, context: SharedContext) -> Optional[AgentResult]:
        if not context.treatment or not context.outcome:
            return self.error_result(
                "Treatment and outcome must be defined before DAG construction",
                "Complete the Problem Formulation stage first",
            )
        return None

    def build_prompt(self, task: Task, context: SharedContext) -> str:
        known = ", ".join(context.confounders) if context.confounders else "None specified yet"
        columns = ", ".join(context.dataset.columns) if context.dataset else "unknown"
        return f"""Construct a causal DAG for this research question:

Treatment: {context.treatment}
Outcome: {context.outcome}
Known Confounders: {known}
Measured columns: {columns}

User request: {task.input}

Return JSON:

{{
  "nodes": [
    {{"id": "treatment", "label": "{context.treatment}", "type": "treatment", "observed": true}},
    {{"id": "outcome", "label": "{context.outcome}", "type": "outcome", "observed": true}}
  ],
  "edges": [{{"from": "node_id", "to": "node_id", "type": "causal"}}],
  "assumptions": ["..."],
  "explanation": "Explain the structure",
  "suggestedConfounders": ["..."]
}}"""

    def heuristic_parse(self, text: str, task: Task, context: SharedContext) -> DAGReply:
        nodes: Dict[str, DAGNode] = {}
        edges: List[DAGEdge] = []
        for line in split_lines(text):
            match = _EDGE_LINE_RE.match(line)
            if not match:
                continue
            source, target = match.group(1).strip(), match.group(2).strip()
            for label in (source, target):
                if label not in nodes:
                    nodes[label] = DAGNode(id=label, label=label, type=self._role(label, context))
            edges.append(DAGEdge(source=source, target=target))

        if not edges:
            return self.minimal_reply(context)
        return DAGReply(
            nodes=list(nodes.values()),
            edges=edges,
            explanation="DAG recovered from text edges (fallback parsing)",
        )

    @staticmethod
    def _role(label: str, context: SharedContext) -> str:
        if context.treatment and label.lower() == context.treatment.lower():
            return "treatment"
        if context.outcome and label.lower() == context.outcome.lower():
            return "outcome"
        return "other"

    @staticmethod
    def minimal_reply(context: SharedContext) -> DAGReply:
        return DAGReply(
            nodes=[
                DAGNode(id="treatment", label=context.treatment or "treatment", type="treatment"),
                DAGNode(id="outcome", label=context.outcome or "outcome", type="outcome"),
            ],
            edges=[DAGEdge(source="treatment", target="outcome")],
            assumptions=["Simple direct effect model"],
            explanation="Minimal DAG - may be missing important confounders",
        )

    async def interpret(
        self,
        reply: DAGReply,
        task: Task,
        context: SharedContext,
        executor: Any = None,
    ) -> AgentResult:
        dag = DAG(nodes=reply.nodes, edges=reply.edges, assumptions=reply.assumptions)
        validation = validate_dag(dag, context.treatment, context.outcome)
        if len(dag.edges) == 1 and reply.explanation and reply.explanation.startswith("Minimal DAG"):
            validation["issues"].append("Minimal DAG - may be missing important confounders")
            dag = dag.model_copy(update={"confidence": 0.5})

        data = {
            "dag": dag.model_dump(by_alias=True),
            "validation": validation,
            "explanation": reply.explanation or "DAG constructed",
            "suggested_confounders": reply.suggested_confounders,
            "visual_representation": render_dag(dag),
        }
        updates: Dict[str, Any] = {"dag": dag}
        if reply.suggested_confounders:
            updates["confounders"] = reply.suggested_confounders

        if not validation["has_no_cycles"]:
            return self.iteration_result(
                data,
                "DAG contains cycles - not a valid causal graph",
                "Review the causal relationships to ensure acyclicity",
            )
        if validation["issues"]:
            return self.iteration_result(
                data,
                f"DAG has {len(validation['issues'])} structural issue(s)",
                "Review and address the flagged issues before proceeding",
                updates=updates,
            )
        return self.success_result(
            data,
            [
                "Review the proposed DAG and refine if needed",
                "Consider the suggested confounders",
                "Proceed to Identification",
            ],
            updates,
        )
