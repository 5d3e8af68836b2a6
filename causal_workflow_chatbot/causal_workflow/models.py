from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase keys the LLM replies with."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Workflow stages
# ============================================================================

class Stage(str, Enum):
    FORMULATION = "formulation"
    EDA = "eda"
    DAG = "dag"
    IDENTIFICATION = "identification"
    ESTIMATION = "estimation"


STAGE_ORDER: List[Stage] = [
    Stage.FORMULATION,
    Stage.EDA,
    Stage.DAG,
    Stage.IDENTIFICATION,
    Stage.ESTIMATION,
]

STAGE_LABELS: Dict[Stage, str] = {
    Stage.FORMULATION: "Problem Formulation",
    Stage.EDA: "Exploratory Data Analysis",
    Stage.DAG: "DAG Construction",
    Stage.IDENTIFICATION: "Identification",
    Stage.ESTIMATION: "Estimation",
}


def stage_index(stage: Stage) -> int:
    return STAGE_ORDER.index(stage)


def coerce_stage(value: Any) -> Optional[Stage]:
    """Map loose LLM spellings ("Formulation", "EDA stage") onto the enum."""
    if isinstance(value, Stage):
        return value
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    for stage in STAGE_ORDER:
        if lowered == stage.value or lowered.startswith(stage.value):
            return stage
    if "explor" in lowered:
        return Stage.EDA
    if "graph" in lowered:
        return Stage.DAG
    return None


StageStatus = Literal["pending", "in_progress", "completed", "failed"]


# ============================================================================
# Shared context
# ============================================================================

class DatasetInfo(CamelModel):
    name: str
    rows: int
    columns: List[str] = Field(default_factory=list)
    path: Optional[str] = None
    treatment_column: Optional[str] = None
    outcome_column: Optional[str] = None


class CausalEstimate(CamelModel):
    effect: Optional[float] = None
    method: str
    standard_error: Optional[float] = None
    confidence_interval: Optional[Tuple[float, float]] = None
    p_value: Optional[float] = None


class DAGNode(CamelModel):
    id: str
    label: str
    type: Literal["treatment", "outcome", "confounder", "mediator", "collider", "other"] = "other"
    observed: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> str:
        allowed = {"treatment", "outcome", "confounder", "mediator", "collider"}
        return value if value in allowed else "other"


class DAGEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    type: str = "causal"


class DAG(CamelModel):
    nodes: List[DAGNode] = Field(default_factory=list)
    edges: List[DAGEdge] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
    source: Literal["user", "agent"] = "agent"
    confidence: float = 0.8


class AssumptionViolation(CamelModel):
    assumption: str
    severity: Literal["critical", "moderate", "minor"] = "moderate"
    description: str = ""
    suggested_action: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def _normalise_severity(cls, value: Any) -> str:
        lowered = str(value or "").strip().lower()
        return lowered if lowered in {"critical", "moderate", "minor"} else "moderate"


class SharedContext(CamelModel):
    treatment: Optional[str] = None
    outcome: Optional[str] = None
    confounders: List[str] = Field(default_factory=list)
    dag: Optional[DAG] = None
    dataset: Optional[DatasetInfo] = None
    adjustment_set: Optional[List[str]] = None
    estimate: Optional[CausalEstimate] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("confounders", mode="before")
    @classmethod
    def _confounders_never_none(cls, value: Any) -> List[str]:
        if value is None:
            return []
        return value


# ============================================================================
# Stage bookkeeping
# ============================================================================

class IterationRecord(BaseModel):
    iteration: int
    timestamp: str
    action: str
    result: Optional[Dict[str, Any]] = None


class StageState(BaseModel):
    name: Stage
    status: StageStatus = "pending"
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    iterations: List[IterationRecord] = Field(default_factory=list)


# ============================================================================
# Agent contract
# ============================================================================

class Task(BaseModel):
    id: str
    stage: Stage
    description: str
    input: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Feedback(CamelModel):
    type: Literal["error", "warning", "info", "success"]
    message: str
    details: Optional[str] = None
    suggested_action: Optional[str] = None


class AgentResult(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    feedback: Optional[Feedback] = None
    suggested_next_steps: List[str] = Field(default_factory=list)
    requires_iteration: bool = False
    context_updates: Dict[str, Any] = Field(default_factory=dict)
    diagnostics: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_invariants(self) -> "AgentResult":
        if not self.success and not self.error:
            raise ValueError("A failed AgentResult must carry an error")
        if self.requires_iteration and self.feedback is None:
            raise ValueError("An AgentResult requiring iteration must carry feedback")
        return self


# ============================================================================
# Planner output
# ============================================================================

IntentType = Literal[
    "formulation",
    "eda",
    "estimation",
    "dag",
    "identification",
    "general_question",
    "workflow_control",
    "dataset_operation",
]

INTENT_TYPES = (
    "formulation",
    "eda",
    "estimation",
    "dag",
    "identification",
    "general_question",
    "workflow_control",
    "dataset_operation",
)


class PlannerIntent(CamelModel):
    type: IntentType = "general_question"
    subtype: Optional[str] = None
    user_goal: str = ""
    requires_dataset: bool = False
    requires_prior_stages: List[Stage] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _known_intent(cls, value: Any) -> str:
        lowered = str(value or "").strip().lower()
        return lowered if lowered in INTENT_TYPES else "general_question"

    @field_validator("requires_prior_stages", mode="before")
    @classmethod
    def _known_stages(cls, value: Any) -> List[Stage]:
        stages: List[Stage] = []
        for item in value or []:
            stage = coerce_stage(item)
            if stage is not None and stage not in stages:
                stages.append(stage)
        return stages

    @field_validator("requires_dataset", mode="before")
    @classmethod
    def _null_means_false(cls, value: Any) -> bool:
        return bool(value)


class CausalSpecification(CamelModel):
    research_question: Optional[str] = None
    treatment: Optional[str] = None
    outcome: Optional[str] = None
    confounders: List[str] = Field(default_factory=list)
    assumptions_to_check: List[str] = Field(default_factory=list)
    estimation_method: Optional[str] = None
    data_requirements: List[str] = Field(default_factory=list)

    @field_validator("confounders", "assumptions_to_check", "data_requirements", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> List[str]:
        return list(value or [])


class ExecutionStep(CamelModel):
    step_number: int = 1
    agent: str = "Assistant"
    action: str = ""
    input: str = ""
    expected_output: str = ""
    depends_on: List[int] = Field(default_factory=list)

    @field_validator("input", mode="before")
    @classmethod
    def _stringify_input(cls, value: Any) -> str:
        return value if isinstance(value, str) else str(value or "")


class ExecutionPlan(CamelModel):
    steps: List[ExecutionStep] = Field(default_factory=list)
    estimated_duration: str = ""
    prerequisites: List[str] = Field(default_factory=list)
    expected_outputs: List[str] = Field(default_factory=list)


class PlannerResult(CamelModel):
    intent: PlannerIntent = Field(default_factory=PlannerIntent)
    causal_spec: CausalSpecification = Field(default_factory=CausalSpecification)
    execution_plan: ExecutionPlan = Field(default_factory=ExecutionPlan)
    confidence: float = 0.5
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, number))


# ============================================================================
# Session + display
# ============================================================================

class ConversationTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class WorkflowSession(BaseModel):
    session_id: str
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
    current_stage: Stage = Stage.FORMULATION
    shared_context: SharedContext = Field(default_factory=SharedContext)
    stages: Dict[Stage, StageState] = Field(
        default_factory=lambda: {stage: StageState(name=stage) for stage in STAGE_ORDER}
    )
    conversation_history: List[ConversationTurn] = Field(default_factory=list)


class DisplayMessage(CamelModel):
    kind: Literal["assistant-message", "system-message", "error"]
    content: str
    agent_name: Optional[str] = None
    stage: Optional[Stage] = None
    metadata: Optional[Dict[str, Any]] = None


class ChatRequest(BaseModel):
    session_id: Optional[str] = None
    message: str


class RestartRequest(BaseModel):
    session_id: str
