"""
Shared fixtures for the Causal Workflow Chatbot test suite.

These fixtures provide mock completion services, a fake code executor,
sample data and session state that individual test modules can use.
"""

import json
import os
import sys
import uuid
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pandas as pd
import pytest

# ── Add project directory to path so we can import chatbot_server ──
CHATBOT_DIR = Path(__file__).parent.parent.resolve()
if str(CHATBOT_DIR) not in sys.path:
    sys.path.insert(0, str(CHATBOT_DIR))

# Ensure local LLM mode in tests unless explicitly overridden.
os.environ.setdefault("LLM_PROVIDER", "ollama")


# ── Import after path & env setup ──
import chatbot_server  # noqa: E402
from causal_workflow import runtime_context  # noqa: E402
from causal_workflow.display import CollectingSink  # noqa: E402
from causal_workflow.errors import ServiceInvocationError  # noqa: E402
from causal_workflow.execution import CellOutput, ExecutionResult  # noqa: E402
from causal_workflow.models import DAG, DAGEdge, DAGNode, DatasetInfo, SharedContext  # noqa: E402
from causal_workflow.session_store import SessionRegistry  # noqa: E402

app = chatbot_server.app
sessions = runtime_context.sessions


# ============================================================================
# Test Data Fixtures
# ============================================================================

@pytest.fixture
def sample_dataframe():
    """Synthetic observational data: age confounds aspirin -> heart_attack."""
    rng = np.random.default_rng(7)
    n = 200
    age = rng.normal(60, 8, n).round(1)
    aspirin = (rng.random(n) < 1 / (1 + np.exp(-(age - 60) / 8))).astype(int)
    heart_attack = (rng.random(n) < 0.1 + 0.004 * (age - 60) - 0.05 * aspirin).astype(int)
    return pd.DataFrame({"age": age, "aspirin": aspirin, "heart_attack": heart_attack})


@pytest.fixture
def sample_csv_path(tmp_path, sample_dataframe):
    path = tmp_path / "aspirin_study.csv"
    sample_dataframe.to_csv(path, index=False)
    return str(path)


# ============================================================================
# Context Fixtures
# ============================================================================

@pytest.fixture
def empty_context():
    return SharedContext()


@pytest.fixture
def formulated_context():
    """Treatment and outcome defined, nothing else."""
    return SharedContext(treatment="aspirin", outcome="heart_attack", confounders=["age"])


@pytest.fixture
def sample_dag():
    """age -> aspirin, age -> heart_attack, aspirin -> heart_attack."""
    return DAG(
        nodes=[
            DAGNode(id="treatment", label="aspirin", type="treatment"),
            DAGNode(id="outcome", label="heart_attack", type="outcome"),
            DAGNode(id="age", label="age", type="confounder"),
        ],
        edges=[
            DAGEdge(source="age", target="treatment"),
            DAGEdge(source="age", target="outcome"),
            DAGEdge(source="treatment", target="outcome"),
        ],
    )


@pytest.fixture
def context_with_dataset(formulated_context, sample_csv_path):
    return formulated_context.model_copy(
        update={
            "dataset": DatasetInfo(
                name="aspirin_study.csv",
                rows=200,
                columns=["age", "aspirin", "heart_attack"],
                path=sample_csv_path,
            )
        }
    )


@pytest.fixture
def identified_context(context_with_dataset, sample_dag):
    return context_with_dataset.model_copy(update={"dag": sample_dag, "adjustment_set": ["age"]})


# ============================================================================
# Mock Fixtures
# ============================================================================

def make_completion(*replies):
    """A completion service whose ``complete`` returns the given replies in order."""
    service = MagicMock()
    if len(replies) == 1:
        service.complete = AsyncMock(return_value=replies[0])
    else:
        service.complete = AsyncMock(side_effect=list(replies))
    return service


@pytest.fixture
def completion_factory():
    return make_completion


@pytest.fixture
def mock_completion():
    """Completion service returning '{}' unless a test reconfigures it."""
    return make_completion("{}")


@pytest.fixture
def failing_completion():
    """Completion service that is unreachable."""
    service = MagicMock()
    service.complete = AsyncMock(side_effect=ServiceInvocationError("Completion service unreachable"))
    return service


@pytest.fixture
def fake_executor():
    """Connected executor whose cells succeed and whose variables are preset."""
    executor = MagicMock()
    executor.connected = True
    executor.execute = AsyncMock(
        return_value=ExecutionResult(
            success=True,
            outputs=[CellOutput(output_type="stream", text="ok\n")],
            execution_time_ms=12,
        )
    )
    variables = {"effect": -0.048, "ci_low": -0.09, "ci_high": -0.006}

    async def _get_variable(name):
        if name not in variables:
            raise ServiceInvocationError(f"Could not read variable '{name}'")
        return variables[name]

    executor.get_variable = AsyncMock(side_effect=_get_variable)
    executor.connect = AsyncMock()
    executor.disconnect = AsyncMock()
    return executor


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def session_id():
    """A fresh unique session ID for each test."""
    return str(uuid.uuid4())


# ============================================================================
# Reply Builders
# ============================================================================

@pytest.fixture
def formulation_reply():
    return json.dumps({
        "treatment": "aspirin",
        "outcome": "heart_attack",
        "population": "Adults over 50",
        "confounders": ["age"],
        "issues": ["Adherence is self-reported"],
        "suggestions": ["Define the follow-up window"],
        "feasibility": "HIGH",
        "refinedQuestion": "Does daily aspirin reduce heart attacks in adults over 50?",
    })


@pytest.fixture
def eda_reply_critical():
    return json.dumps({
        "checks": [{"name": "Overlap", "type": "positivity", "status": "fail", "details": "No untreated over 80"}],
        "violations": [
            {
                "assumption": "Positivity",
                "severity": "critical",
                "description": "No untreated units above age 80",
                "suggestedAction": "Trim the population",
            }
        ],
        "pythonCode": "print(df.groupby('aspirin')['age'].describe())",
        "summary": "Overlap fails for the oldest patients",
        "recommendations": ["Restrict to ages 50-80"],
    })


@pytest.fixture
def eda_reply_clean():
    return json.dumps({
        "checks": [{"name": "Missing data", "type": "missing_data", "status": "pass", "details": "none"}],
        "violations": [],
        "pythonCode": "print(df.isna().sum())",
        "summary": "No issues found",
        "recommendations": [],
    })


# ============================================================================
# Runtime (FastAPI) Fixtures
# ============================================================================

@pytest.fixture
def clean_sessions():
    """Clear the global session registry before and after test."""
    sessions.clear()
    yield sessions
    sessions.clear()


@pytest.fixture
def offline_llm():
    """Make the process-wide completion services unreachable (keyword fallback path)."""
    offline = AsyncMock(side_effect=ServiceInvocationError("Completion service unreachable"))
    with patch.object(runtime_context.planner_completion, "complete", offline), \
            patch.object(runtime_context.agent_completion, "complete", offline):
        yield offline


@pytest.fixture
def client(offline_llm, clean_sessions):
    """FastAPI TestClient for HTTP endpoint testing."""
    from fastapi.testclient import TestClient
    return TestClient(app)
