"""
Tests for the stage agents.

Each agent is driven with a mock completion service so the tests cover
prompt-independent behavior: input checks, strict vs heuristic parsing,
result shaping and the context writes each agent proposes.
"""

import json

import pytest

from causal_workflow.agents import (
    DAGAgent,
    EDAAgent,
    EstimationAgent,
    FormulationAgent,
    IdentificationAgent,
    build_agent_registry,
)
from causal_workflow.agents.dag import render_dag, validate_dag
from causal_workflow.agents.estimation import normalise_method
from causal_workflow.agents.identification import backdoor_candidates
from causal_workflow.execution import ExecutionResult
from causal_workflow.models import DAG, CausalEstimate, DAGEdge, DAGNode, SharedContext, Stage, Task


def _task(stage, text="run this stage", **metadata):
    return Task(id=f"{stage.value}-test", stage=stage, description=text, input=text, metadata=metadata)


def _empty():
    return SharedContext()


# ============================================================================
# Shared Agent Contract
# ============================================================================

class TestAgentContract:

    @pytest.mark.asyncio
    async def test_completion_failure_is_reported_as_error(self, failing_completion):
        agent = FormulationAgent(failing_completion)
        result = await agent.execute(_task(Stage.FORMULATION), _empty())

        assert result.success is False
        assert "unreachable" in result.error
        assert result.feedback.type == "error"
        assert result.context_updates == {}

    @pytest.mark.asyncio
    async def test_empty_structured_reply_is_a_no_op(self, mock_completion):
        agent = FormulationAgent(mock_completion)
        result = await agent.execute(_task(Stage.FORMULATION), _empty())

        assert result.success is True
        assert result.requires_iteration is True
        assert result.feedback.type == "info"
        assert result.context_updates == {}

    @pytest.mark.asyncio
    async def test_strict_reply_is_tagged_structured(self, completion_factory, formulation_reply):
        agent = FormulationAgent(completion_factory(formulation_reply))
        result = await agent.execute(_task(Stage.FORMULATION), _empty())

        assert result.data["parse_mode"] == "structured"
        assert result.diagnostics == []

    @pytest.mark.asyncio
    async def test_heuristic_reply_is_tagged_and_diagnosed(self, completion_factory):
        text = "Treatment: aspirin\nOutcome: heart_attack\nPopulation: adults over 50"
        agent = FormulationAgent(completion_factory(text))
        result = await agent.execute(_task(Stage.FORMULATION), _empty())

        assert result.success is True
        assert result.data["parse_mode"] == "heuristic"
        assert any("heuristically" in d for d in result.diagnostics)
        assert result.context_updates["treatment"] == "aspirin"

    def test_every_write_is_a_context_field(self):
        for agent in build_agent_registry(None).values():
            for key in agent.writes:
                field = key.split(".", 1)[0]
                assert field in SharedContext.model_fields, f"{agent.name} writes unknown field {key}"

    def test_registry_subset(self):
        agents = build_agent_registry(None, stages=[Stage.FORMULATION, Stage.EDA])
        assert set(agents) == {Stage.FORMULATION, Stage.EDA}
        assert agents[Stage.EDA].can_handle(_task(Stage.EDA))
        assert not agents[Stage.EDA].can_handle(_task(Stage.DAG))


# ============================================================================
# Formulation
# ============================================================================

class TestFormulationAgent:

    @pytest.mark.asyncio
    async def test_structured_reply_writes_variables(self, completion_factory, formulation_reply):
        agent = FormulationAgent(completion_factory(formulation_reply))
        result = await agent.execute(_task(Stage.FORMULATION, "Does aspirin reduce heart attacks?"), _empty())

        assert result.success is True
        assert result.requires_iteration is False
        updates = result.context_updates
        assert updates["treatment"] == "aspirin"
        assert updates["outcome"] == "heart_attack"
        assert updates["confounders"] == ["age"]
        assert updates["extras.population"] == "Adults over 50"
        assert set(updates) <= set(agent.writes)

    @pytest.mark.asyncio
    async def test_missing_outcome_requires_iteration_without_writes(self, completion_factory):
        agent = FormulationAgent(completion_factory(json.dumps({"treatment": "aspirin"})))
        result = await agent.execute(_task(Stage.FORMULATION), _empty())

        assert result.success is True
        assert result.requires_iteration is True
        assert result.context_updates == {}

    @pytest.mark.asyncio
    async def test_heuristic_uses_planner_hint(self, completion_factory):
        agent = FormulationAgent(completion_factory("Treatment: aspirin\nNothing else to say."))
        task = _task(Stage.FORMULATION, causal_spec={"treatment": "aspirin", "outcome": "heart attacks"})
        result = await agent.execute(task, _empty())

        assert result.context_updates["outcome"] == "heart attacks"

    @pytest.mark.asyncio
    async def test_low_feasibility_with_critical_issue_requires_iteration(self, completion_factory):
        reply = json.dumps({
            "treatment": "aspirin",
            "outcome": "heart_attack",
            "issues": ["Critical: treatment assignment is unknown"],
            "feasibility": "low",
        })
        agent = FormulationAgent(completion_factory(reply))
        result = await agent.execute(_task(Stage.FORMULATION), _empty())

        assert result.requires_iteration is True
        assert result.context_updates["treatment"] == "aspirin"


# ============================================================================
# EDA
# ============================================================================

class TestEDAAgent:

    @pytest.mark.asyncio
    async def test_requires_formulation(self, mock_completion):
        agent = EDAAgent(mock_completion)
        result = await agent.execute(_task(Stage.EDA), _empty())

        assert result.success is False
        mock_completion.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_critical_violation_requires_iteration(self, completion_factory, eda_reply_critical, formulated_context):
        agent = EDAAgent(completion_factory(eda_reply_critical))
        result = await agent.execute(_task(Stage.EDA), formulated_context)

        assert result.success is True
        assert result.requires_iteration is True
        assert result.data["violations"][0]["severity"] == "critical"
        assert "extras.violations" in result.context_updates

    @pytest.mark.asyncio
    async def test_clean_reply_runs_code(self, completion_factory, eda_reply_clean, context_with_dataset, fake_executor):
        agent = EDAAgent(completion_factory(eda_reply_clean))
        result = await agent.execute(_task(Stage.EDA), context_with_dataset, fake_executor)

        assert result.success is True
        assert result.requires_iteration is False
        assert result.data["execution_success"] is True
        fake_executor.execute.assert_awaited_once_with("print(df.isna().sum())")

    @pytest.mark.asyncio
    async def test_execution_failure_is_a_moderate_violation(
        self, completion_factory, eda_reply_clean, context_with_dataset, fake_executor
    ):
        fake_executor.execute.return_value = ExecutionResult.failure("KeyError", "'smoker'")
        agent = EDAAgent(completion_factory(eda_reply_clean))
        result = await agent.execute(_task(Stage.EDA), context_with_dataset, fake_executor)

        assert result.success is True
        assert result.requires_iteration is False
        assert result.data["violations"][-1]["assumption"] == "Code Execution"
        assert any("KeyError" in d for d in result.diagnostics)

    @pytest.mark.asyncio
    async def test_disconnected_executor_is_skipped(self, completion_factory, eda_reply_clean, formulated_context, fake_executor):
        fake_executor.connected = False
        agent = EDAAgent(completion_factory(eda_reply_clean))
        result = await agent.execute(_task(Stage.EDA), formulated_context, fake_executor)

        assert result.data["execution_success"] is None
        fake_executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_heuristic_negated_findings_do_not_block(self, completion_factory, formulated_context):
        text = "Findings:\n- No critical violations were found\n- All assumptions look satisfied"
        agent = EDAAgent(completion_factory(text))
        result = await agent.execute(_task(Stage.EDA), formulated_context)

        assert result.data["parse_mode"] == "heuristic"
        assert result.requires_iteration is False
        assert result.data["violations"] == []


# ============================================================================
# DAG
# ============================================================================

def _dag_reply(edges, nodes=None, **extra):
    nodes = nodes or [
        {"id": "treatment", "label": "aspirin", "type": "treatment"},
        {"id": "outcome", "label": "heart_attack", "type": "outcome"},
        {"id": "age", "label": "age", "type": "confounder"},
    ]
    payload = {"nodes": nodes, "edges": [{"from": s, "to": t} for s, t in edges], "explanation": "Age confounds"}
    payload.update(extra)
    return json.dumps(payload)


class TestDAGAgent:

    @pytest.mark.asyncio
    async def test_valid_dag_is_written(self, completion_factory, formulated_context):
        reply = _dag_reply(
            [("age", "treatment"), ("age", "outcome"), ("treatment", "outcome")],
            suggestedConfounders=["age", "sex"],
        )
        agent = DAGAgent(completion_factory(reply))
        result = await agent.execute(_task(Stage.DAG), formulated_context)

        assert result.success is True
        assert result.requires_iteration is False
        assert isinstance(result.context_updates["dag"], DAG)
        assert len(result.context_updates["dag"].edges) == 3
        assert result.context_updates["confounders"] == ["age", "sex"]
        assert result.data["validation"]["has_no_cycles"] is True

    @pytest.mark.asyncio
    async def test_cycle_blocks_writes(self, completion_factory, formulated_context):
        reply = _dag_reply([("treatment", "outcome"), ("outcome", "treatment")])
        agent = DAGAgent(completion_factory(reply))
        result = await agent.execute(_task(Stage.DAG), formulated_context)

        assert result.requires_iteration is True
        assert result.data["validation"]["has_no_cycles"] is False
        assert result.context_updates == {}

    @pytest.mark.asyncio
    async def test_heuristic_reads_edge_lines(self, completion_factory, formulated_context):
        text = "Here is the graph:\naspirin -> heart_attack\nage -> aspirin\nage → heart_attack"
        agent = DAGAgent(completion_factory(text))
        result = await agent.execute(_task(Stage.DAG), formulated_context)

        assert result.data["parse_mode"] == "heuristic"
        dag = result.context_updates["dag"]
        assert len(dag.edges) == 3
        assert {n.id: n.type for n in dag.nodes}["aspirin"] == "treatment"

    @pytest.mark.asyncio
    async def test_unusable_reply_falls_back_to_minimal_dag(self, completion_factory, formulated_context):
        agent = DAGAgent(completion_factory("I am not sure what the graph looks like."))
        result = await agent.execute(_task(Stage.DAG), formulated_context)

        assert result.requires_iteration is True
        dag = result.context_updates["dag"]
        assert dag.confidence == 0.5
        assert len(dag.edges) == 1

    @pytest.mark.asyncio
    async def test_requires_treatment_and_outcome(self, mock_completion):
        result = await DAGAgent(mock_completion).execute(_task(Stage.DAG), _empty())
        assert result.success is False
        mock_completion.complete.assert_not_awaited()


class TestDAGValidation:

    def test_sample_dag_is_valid(self, sample_dag):
        validation = validate_dag(sample_dag, "aspirin", "heart_attack")
        assert validation == {"has_no_cycles": True, "has_treatment_outcome_path": True, "issues": []}

    def test_missing_path_is_an_issue(self):
        dag = DAG(
            nodes=[DAGNode(id="t", label="t", type="treatment"), DAGNode(id="y", label="y", type="outcome")],
            edges=[DAGEdge(source="y", target="t")],
        )
        validation = validate_dag(dag, "t", "y")
        assert validation["has_treatment_outcome_path"] is False
        assert "No directed path from treatment to outcome" in validation["issues"]

    def test_undeclared_nodes_are_reported(self, sample_dag):
        dag = sample_dag.model_copy(update={"edges": sample_dag.edges + [DAGEdge(source="sex", target="outcome")]})
        validation = validate_dag(dag, "aspirin", "heart_attack")
        assert any("sex" in issue for issue in validation["issues"])

    def test_render_uses_labels(self, sample_dag):
        rendered = render_dag(sample_dag)
        assert rendered.startswith("Causal DAG:")
        assert "age → aspirin" in rendered
        assert "aspirin → heart_attack" in rendered


# ============================================================================
# Identification
# ============================================================================

class TestIdentificationAgent:

    @pytest.mark.asyncio
    async def test_identified_set_is_written(self, completion_factory, formulated_context, sample_dag):
        context = formulated_context.model_copy(update={"dag": sample_dag})
        reply = json.dumps({
            "isIdentifiable": True,
            "criterion": "backdoor",
            "adjustmentSets": [["age"]],
            "recommendedSet": ["age"],
            "backdoorPaths": ["aspirin <- age -> heart_attack"],
        })
        result = await IdentificationAgent(completion_factory(reply)).execute(_task(Stage.IDENTIFICATION), context)

        assert result.success is True
        assert result.requires_iteration is False
        assert result.context_updates == {"adjustment_set": ["age"]}

    @pytest.mark.asyncio
    async def test_unadjusted_common_cause_is_warned(self, completion_factory, formulated_context, sample_dag):
        context = formulated_context.model_copy(update={"dag": sample_dag})
        reply = json.dumps({"isIdentifiable": True, "criterion": "backdoor", "recommendedSet": []})
        result = await IdentificationAgent(completion_factory(reply)).execute(_task(Stage.IDENTIFICATION), context)

        assert result.requires_iteration is True
        assert any("age" in w for w in result.data["warnings"])
        assert result.context_updates == {}

    @pytest.mark.asyncio
    async def test_not_identifiable(self, completion_factory, formulated_context, sample_dag):
        context = formulated_context.model_copy(update={"dag": sample_dag})
        reply = json.dumps({"isIdentifiable": False, "criterion": "none", "explanation": "Unobserved confounding"})
        result = await IdentificationAgent(completion_factory(reply)).execute(_task(Stage.IDENTIFICATION), context)

        assert result.requires_iteration is True
        assert result.context_updates == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "verdict,expected",
        [
            ("The effect is identifiable via the backdoor criterion.", True),
            ("The effect is unidentifiable because of a latent confounder.", False),
            ("The effect is non-identifiable without further assumptions.", False),
            ("The effect is not identifiable from this graph.", False),
        ],
    )
    async def test_heuristic_identifiability_verdict(
        self, verdict, expected, completion_factory, formulated_context, sample_dag
    ):
        context = formulated_context.model_copy(update={"dag": sample_dag})
        text = f"{verdict}\nRecommended: age"
        result = await IdentificationAgent(completion_factory(text)).execute(_task(Stage.IDENTIFICATION), context)

        assert result.data["parse_mode"] == "heuristic"
        assert result.data["is_identifiable"] is expected
        assert result.context_updates == ({"adjustment_set": ["age"]} if expected else {})

    @pytest.mark.asyncio
    async def test_requires_dag(self, mock_completion, formulated_context):
        result = await IdentificationAgent(mock_completion).execute(_task(Stage.IDENTIFICATION), formulated_context)
        assert result.success is False
        mock_completion.complete.assert_not_awaited()

    def test_backdoor_candidates(self, formulated_context, sample_dag):
        context = formulated_context.model_copy(update={"dag": sample_dag})
        assert backdoor_candidates(context) == ["age"]

    def test_unobserved_candidates_are_excluded(self, formulated_context, sample_dag):
        nodes = [n.model_copy(update={"observed": n.id != "age"}) for n in sample_dag.nodes]
        context = formulated_context.model_copy(update={"dag": sample_dag.model_copy(update={"nodes": nodes})})
        assert backdoor_candidates(context) == []


# ============================================================================
# Estimation
# ============================================================================

class TestEstimationAgent:

    @pytest.mark.asyncio
    async def test_missing_treatment_is_a_failure(self, mock_completion):
        result = await EstimationAgent(mock_completion).execute(_task(Stage.ESTIMATION), _empty())

        assert result.success is False
        assert result.error == "Treatment and outcome must be defined before estimation"
        assert result.feedback.suggested_action == "Complete formulation first"

    @pytest.mark.asyncio
    async def test_missing_adjustment_set_requires_iteration(self, mock_completion, formulated_context):
        result = await EstimationAgent(mock_completion).execute(_task(Stage.ESTIMATION), formulated_context)

        assert result.success is True
        assert result.requires_iteration is True
        assert result.feedback.type == "warning"
        assert result.context_updates == {}
        mock_completion.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_executed_estimate_is_recorded(self, completion_factory, identified_context, fake_executor):
        reply = json.dumps({
            "method": "OLS",
            "pythonCode": "effect = -0.05\nci_low = -0.1\nci_high = 0.0",
            "interpretation": "Aspirin lowers risk",
            "estimate": {"effect": -0.05, "standardError": 0.02},
        })
        result = await EstimationAgent(completion_factory(reply)).execute(
            _task(Stage.ESTIMATION), identified_context, fake_executor
        )

        assert result.success is True
        estimate = result.context_updates["estimate"]
        assert isinstance(estimate, CausalEstimate)
        assert estimate.method == "regression"
        assert estimate.effect == pytest.approx(-0.048)
        assert estimate.confidence_interval == pytest.approx((-0.09, -0.006))
        assert estimate.standard_error == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_failed_execution_keeps_reported_estimate(self, completion_factory, identified_context, fake_executor):
        fake_executor.execute.return_value = ExecutionResult.failure("NameError", "name 'sm' is not defined")
        reply = json.dumps({"method": "ipw", "pythonCode": "sm.OLS()", "estimate": {"effect": -0.03}})
        result = await EstimationAgent(completion_factory(reply)).execute(
            _task(Stage.ESTIMATION), identified_context, fake_executor
        )

        assert result.context_updates["estimate"].effect == pytest.approx(-0.03)
        assert any("failed to run" in item for item in result.data["limitations"])
        fake_executor.get_variable.assert_not_awaited()

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, "regression"),
            ("OLS", "regression"),
            ("Propensity Score Matching", "matching"),
            ("IPTW", "ipw"),
            ("AIPW", "doubly_robust"),
            ("g-formula", "g_formula"),
        ],
    )
    def test_normalise_method(self, value, expected):
        assert normalise_method(value) == expected
