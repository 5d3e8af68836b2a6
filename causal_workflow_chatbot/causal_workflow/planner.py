"""
Intent Planner.

Classifies a user message into one intent, extracts a partial causal
specification and proposes an execution plan. The completion service is
asked first; when it is unreachable or its reply cannot be validated, an
ordered list of keyword rules decides instead.
"""

from __future__ import annotations

import re
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple

from pydantic import ValidationError

from .config import DEFAULT_HISTORY_WINDOW
from .context import summarize_context
from .errors import ResponseParseError, ServiceInvocationError
from .models import (
    CausalSpecification,
    ConversationTurn,
    ExecutionPlan,
    ExecutionStep,
    PlannerIntent,
    PlannerResult,
    SharedContext,
    Stage,
)
from .parsing import extract_json_array, extract_json_object
from .prompts import PLANNER_SYSTEM_PROMPT

FALLBACK_REASONING = "Fallback keyword-based analysis (LLM analysis failed)"

_GREETING_RE = re.compile(r"\b(hello|hi|hey|greetings)\b")
_DOES_RE = re.compile(r"\bdoes\b")
_CAUSE_RE = re.compile(r"\bcaus(e|es|ed|ing)\b")
_CSV_PATH_RE = re.compile(r"([^\s'\"]+\.csv)\b", re.IGNORECASE)
_DATASET_VERB_RE = re.compile(r"\b(load|upload|open|use|import)\b")
_DATASET_NOUN_RE = re.compile(r"\b(data|dataset|datasets|csv|file)\b")

_VERBS = (
    r"reduce|increase|affect|cause|improve|lower|raise|influence|impact|change|"
    r"prevent|decrease|worsen|lead to|result in"
)
_DOES_X_VERB_Y_RE = re.compile(
    rf"\bdoes\s+(?:the\s+|a\s+)?(?P<treatment>.+?)\s+(?:{_VERBS})s?\s+(?:the\s+)?(?P<outcome>.+?)[\s?.!]*$",
    re.IGNORECASE,
)
_EFFECT_OF_RE = re.compile(
    r"\b(?:effect|impact|influence)\s+of\s+(?:the\s+)?(?P<treatment>.+?)\s+on\s+(?:the\s+)?(?P<outcome>.+?)[\s?.!]*$",
    re.IGNORECASE,
)
_CAUSES_RE = re.compile(
    r"^(?:does\s+|do\s+|can\s+)?(?P<treatment>.+?)\s+causes?\s+(?P<outcome>.+?)[\s?.!]*$",
    re.IGNORECASE,
)

AFFIRMATIVE_WORDS = {"yes", "yeah", "yep", "sure", "ok", "okay", "y", "yes please", "go ahead"}
RESTART_WORDS = {"restart", "start over", "reset", "new analysis"}
CONTINUE_WORDS = {"continue", "next", "next step", "proceed"}

DEFAULT_NEXT_STEPS = {
    Stage.FORMULATION: [
        "Load or create a dataset",
        "Run exploratory data analysis to check assumptions",
        "Review and refine the causal variables",
    ],
    Stage.EDA: [
        "Check positivity and overlap assumptions",
        "Visualize treatment and outcome distributions",
        "Proceed to DAG construction",
    ],
    Stage.DAG: [
        "Review the proposed DAG for missing confounders",
        "Mark unobserved variables explicitly",
        "Proceed to identification of an adjustment set",
    ],
    Stage.IDENTIFICATION: [
        "Review the recommended adjustment set",
        "Check that every adjustment variable is measured in the dataset",
        "Proceed to causal effect estimation",
    ],
    Stage.ESTIMATION: [
        "Review the causal effect estimate",
        "Check sensitivity to unmeasured confounding",
        "Generate a summary report",
    ],
}

NO_DATASET_STEPS = [
    "Load a dataset to begin analysis",
    "Make sure the dataset has columns for the treatment and outcome",
    "Review and refine the causal variables",
]


def normalise_message(message: str) -> str:
    return " ".join((message or "").lower().strip().rstrip("!.?").split())


def extract_treatment_outcome(message: str) -> Tuple[Optional[str], Optional[str]]:
    """Best-effort (treatment, outcome) from "does X reduce Y" / "effect of X on Y"."""
    text = (message or "").strip()
    for pattern in (_EFFECT_OF_RE, _DOES_X_VERB_Y_RE, _CAUSES_RE):
        match = pattern.search(text)
        if match:
            treatment = match.group("treatment").strip(" ,").lower()
            outcome = match.group("outcome").strip(" ,").lower()
            if treatment and outcome:
                return treatment, outcome
    return None, None


def extract_csv_path(message: str) -> Optional[str]:
    match = _CSV_PATH_RE.search(message or "")
    return match.group(1) if match else None


# ============================================================================
# Fallback rules (evaluated in order; the first match wins)
# ============================================================================

class FallbackRule(NamedTuple):
    name: str
    matches: Callable[[str], bool]
    build: Callable[[str, SharedContext], PlannerResult]


def _single_step(agent: str, action: str, message: str, expected: str) -> List[ExecutionStep]:
    return [ExecutionStep(step_number=1, agent=agent, action=action, input=message, expected_output=expected)]


def _context_spec(context: SharedContext, **extra) -> CausalSpecification:
    return CausalSpecification(
        treatment=context.treatment,
        outcome=context.outcome,
        confounders=list(context.confounders),
        **extra,
    )


def _is_greeting(lower: str) -> bool:
    return bool(_GREETING_RE.search(lower)) or "what's your name" in lower or "who are you" in lower


def _build_greeting(message: str, context: SharedContext) -> PlannerResult:
    return PlannerResult(
        intent=PlannerIntent(type="general_question", subtype="greeting", user_goal="Greeting or introduction"),
        causal_spec=_context_spec(context),
        execution_plan=ExecutionPlan(
            steps=_single_step("Assistant", "Respond to greeting and explain capabilities", message,
                               "Friendly greeting and overview"),
            estimated_duration="Immediate",
            expected_outputs=["Greeting message", "Capability overview"],
        ),
        confidence=0.95,
        reasoning="Fallback: detected greeting or introduction request",
    )


def _is_help(lower: str) -> bool:
    return "help" in lower or "how do i" in lower or "how to" in lower


def _build_help(message: str, context: SharedContext) -> PlannerResult:
    return PlannerResult(
        intent=PlannerIntent(type="general_question", subtype="help", user_goal="Get help with the workflow"),
        causal_spec=_context_spec(context),
        execution_plan=ExecutionPlan(
            steps=_single_step("Assistant", "Explain how to use the workflow", message, "Guidance"),
            estimated_duration="Immediate",
            expected_outputs=["Help message"],
        ),
        confidence=0.9,
        reasoning="Fallback: detected help request",
    )


def _is_affirmative(lower: str) -> bool:
    return normalise_message(lower) in AFFIRMATIVE_WORDS


def _build_affirmative(message: str, context: SharedContext) -> PlannerResult:
    return PlannerResult(
        intent=PlannerIntent(
            type="workflow_control",
            subtype="affirmative",
            user_goal="Confirm and continue with the current stage",
        ),
        causal_spec=_context_spec(context),
        execution_plan=ExecutionPlan(
            steps=_single_step("Assistant", "Continue with the current stage", message, "Next stage guidance"),
            estimated_duration="Immediate",
        ),
        confidence=0.85,
        reasoning="Fallback: detected affirmative response",
    )


def _is_control(lower: str) -> bool:
    normalised = normalise_message(lower)
    return normalised in RESTART_WORDS or normalised in CONTINUE_WORDS


def _build_control(message: str, context: SharedContext) -> PlannerResult:
    subtype = "restart" if normalise_message(message) in RESTART_WORDS else "continue"
    return PlannerResult(
        intent=PlannerIntent(type="workflow_control", subtype=subtype, user_goal=f"Workflow {subtype}"),
        causal_spec=_context_spec(context),
        execution_plan=ExecutionPlan(
            steps=_single_step("Assistant", f"Handle workflow {subtype}", message, "Updated workflow state"),
            estimated_duration="Immediate",
        ),
        confidence=0.85,
        reasoning=f"Fallback: detected workflow {subtype} command",
    )


def _is_dataset_operation(lower: str) -> bool:
    return bool(_DATASET_VERB_RE.search(lower)) and (
        bool(_DATASET_NOUN_RE.search(lower)) or ".csv" in lower
    )


def _build_dataset_operation(message: str, context: SharedContext) -> PlannerResult:
    path = extract_csv_path(message)
    return PlannerResult(
        intent=PlannerIntent(type="dataset_operation", subtype="load", user_goal="Load a dataset"),
        causal_spec=_context_spec(context, data_requirements=[path] if path else []),
        execution_plan=ExecutionPlan(
            steps=_single_step("Assistant", "Load the dataset and describe its columns", path or message,
                               "Dataset summary"),
            estimated_duration="10 seconds",
            expected_outputs=["Row count", "Column list"],
        ),
        confidence=0.6,
        reasoning="Fallback: detected dataset operation",
    )


def _is_causal_question(lower: str) -> bool:
    return (
        "effect of" in lower
        or "impact of" in lower
        or bool(_DOES_RE.search(lower))
        or bool(_CAUSE_RE.search(lower))
        or " affect" in lower
    )


def _build_formulation(message: str, context: SharedContext) -> PlannerResult:
    treatment, outcome = extract_treatment_outcome(message)
    return PlannerResult(
        intent=PlannerIntent(
            type="formulation",
            user_goal="Formulate a causal research question",
            requires_dataset=False,
        ),
        causal_spec=CausalSpecification(
            research_question=message,
            treatment=treatment or context.treatment,
            outcome=outcome or context.outcome,
            confounders=list(context.confounders),
        ),
        execution_plan=ExecutionPlan(
            steps=_single_step(
                "FormulationAgent",
                "Extract treatment, outcome, and confounders from research question",
                message,
                "Structured causal specification",
            ),
            estimated_duration="30 seconds",
            expected_outputs=["Treatment variable", "Outcome variable", "List of confounders"],
        ),
        confidence=0.6,
        reasoning=FALLBACK_REASONING,
    )


def _is_exploration(lower: str) -> bool:
    return "explore" in lower or "check assumptions" in lower or bool(re.search(r"\beda\b", lower))


def _build_eda(message: str, context: SharedContext) -> PlannerResult:
    return PlannerResult(
        intent=PlannerIntent(
            type="eda",
            user_goal="Perform exploratory data analysis",
            requires_dataset=True,
            requires_prior_stages=[Stage.FORMULATION],
        ),
        causal_spec=_context_spec(
            context,
            assumptions_to_check=["Positivity", "SUTVA", "No unmeasured confounding"],
        ),
        execution_plan=ExecutionPlan(
            steps=_single_step("EDAAgent", "Check causal assumptions and data quality", message,
                               "Assumption validation results"),
            estimated_duration="1-2 minutes",
            prerequisites=["Dataset loaded", "Variables defined"],
            expected_outputs=["Data quality report", "Assumption checks"],
        ),
        confidence=0.6,
        reasoning=FALLBACK_REASONING,
    )


def _is_estimation(lower: str) -> bool:
    return "estimate" in lower or "calculate" in lower


def _build_estimation(message: str, context: SharedContext) -> PlannerResult:
    return PlannerResult(
        intent=PlannerIntent(
            type="estimation",
            user_goal="Estimate causal effect",
            requires_dataset=False,
            requires_prior_stages=[Stage.FORMULATION],
        ),
        causal_spec=_context_spec(context, estimation_method="Regression adjustment with confounders"),
        execution_plan=ExecutionPlan(
            steps=_single_step("EstimationAgent", "Estimate average treatment effect", message,
                               "Causal effect estimate with confidence interval"),
            estimated_duration="1-2 minutes",
            prerequisites=["Variables defined"],
            expected_outputs=["Treatment effect estimate", "Standard error", "Confidence interval"],
        ),
        confidence=0.6,
        reasoning=FALLBACK_REASONING,
    )


def _build_general(message: str, context: SharedContext) -> PlannerResult:
    return PlannerResult(
        intent=PlannerIntent(type="general_question", user_goal="Get information or guidance"),
        causal_spec=_context_spec(context),
        execution_plan=ExecutionPlan(
            steps=_single_step("PlannerAgent", "Provide guidance", message, "Helpful response"),
            estimated_duration="5 seconds",
            expected_outputs=["Guidance message"],
        ),
        confidence=0.6,
        reasoning=FALLBACK_REASONING,
    )


FALLBACK_RULES: Sequence[FallbackRule] = (
    FallbackRule("greeting", _is_greeting, _build_greeting),
    FallbackRule("help", _is_help, _build_help),
    FallbackRule("affirmative", _is_affirmative, _build_affirmative),
    FallbackRule("workflow_control", _is_control, _build_control),
    FallbackRule("causal_question", _is_causal_question, _build_formulation),
    FallbackRule("exploration", _is_exploration, _build_eda),
    FallbackRule("estimation", _is_estimation, _build_estimation),
    FallbackRule("dataset_operation", _is_dataset_operation, _build_dataset_operation),
)


def fallback_analysis(
    message: str,
    context: SharedContext,
    rules: Sequence[FallbackRule] = FALLBACK_RULES,
) -> PlannerResult:
    lower = (message or "").lower().strip()
    for rule in rules:
        if rule.matches(lower):
            print(f"[PLANNER] Fallback rule matched: {rule.name}")
            return rule.build(message, context)
    print("[PLANNER] Fallback rule matched: general_question")
    return _build_general(message, context)


# ============================================================================
# Planner
# ============================================================================

def format_history(history: Sequence[ConversationTurn], window: int) -> str:
    if not history:
        return "(No previous conversation)"
    recent = list(history)[-window:]
    return "\n".join(f"{turn.role.upper()}: {turn.content}" for turn in recent)


def enrich(result: PlannerResult, context: SharedContext) -> PlannerResult:
    """Backfill the causal specification from context and enforce implicit prerequisites."""
    spec = result.causal_spec.model_copy()
    if not spec.treatment and context.treatment:
        spec.treatment = context.treatment
    if not spec.outcome and context.outcome:
        spec.outcome = context.outcome
    if not spec.confounders and context.confounders:
        spec.confounders = list(context.confounders)

    intent = result.intent.model_copy()
    if intent.type == "estimation" and Stage.FORMULATION not in intent.requires_prior_stages:
        intent.requires_prior_stages = [Stage.FORMULATION, *intent.requires_prior_stages]
    if intent.type == "eda":
        intent.requires_dataset = True

    return result.model_copy(update={"causal_spec": spec, "intent": intent})


class IntentPlanner:
    def __init__(
        self,
        completion,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        temperature: float = 0.1,
        rules: Sequence[FallbackRule] = FALLBACK_RULES,
    ) -> None:
        self.completion = completion
        self.history_window = history_window
        self.temperature = temperature
        self.rules = rules

    def build_prompt(
        self,
        message: str,
        history: Sequence[ConversationTurn],
        context: SharedContext,
        current_stage: Stage,
    ) -> str:
        return f"""## Current Workflow Context
{summarize_context(context, current_stage)}

## Conversation History
{format_history(history, self.history_window)}

## User Message
"{message}"

Analyze the message and return JSON in exactly this shape:

{{
  "intent": {{
    "type": "formulation|eda|estimation|dag|identification|general_question|workflow_control|dataset_operation",
    "subtype": "optional subtype",
    "userGoal": "what the user wants",
    "requiresDataset": false,
    "requiresPriorStages": ["formulation"]
  }},
  "causalSpec": {{
    "researchQuestion": "...",
    "treatment": "...",
    "outcome": "...",
    "confounders": ["..."],
    "assumptionsToCheck": ["..."],
    "estimationMethod": "...",
    "dataRequirements": ["..."]
  }},
  "executionPlan": {{
    "steps": [{{"stepNumber": 1, "agent": "FormulationAgent", "action": "...", "input": "...", "expectedOutput": "...", "dependsOn": []}}],
    "estimatedDuration": "...",
    "prerequisites": ["..."],
    "expectedOutputs": ["..."]
  }},
  "confidence": 0.9,
  "reasoning": "why this classification"
}}"""

    async def analyze(
        self,
        message: str,
        history: Sequence[ConversationTurn],
        context: SharedContext,
        current_stage: Stage,
    ) -> PlannerResult:
        prompt = self.build_prompt(message, history, context, current_stage)
        try:
            reply = await self.completion.complete(PLANNER_SYSTEM_PROMPT, prompt, temperature=self.temperature)
            result = PlannerResult.model_validate(extract_json_object(reply))
        except (ServiceInvocationError, ResponseParseError, ValidationError) as exc:
            print(f"[PLANNER] LLM analysis failed ({type(exc).__name__}: {exc}); using keyword fallback")
            result = fallback_analysis(message, context, self.rules)

        result = enrich(result, context)
        print(
            f"[PLANNER] intent={result.intent.type}"
            f"{'/' + result.intent.subtype if result.intent.subtype else ''} "
            f"confidence={result.confidence:.2f}"
        )
        return result

    async def suggest_next_steps(
        self,
        context: SharedContext,
        stage: Stage,
        history: Sequence[ConversationTurn] = (),
    ) -> List[str]:
        prompt = f"""Given the current workflow state, suggest 3-5 next steps for the user.

## Current State
{summarize_context(context, stage)}

## Recent Conversation
{format_history(history, self.history_window)}

Provide actionable suggestions as a JSON array of strings:
["Step 1", "Step 2", "Step 3"]

IMPORTANT: Return ONLY a valid JSON array."""
        try:
            reply = await self.completion.complete(PLANNER_SYSTEM_PROMPT, prompt, temperature=0.7)
            steps = [str(item).strip() for item in extract_json_array(reply) if str(item).strip()]
        except (ServiceInvocationError, ResponseParseError) as exc:
            print(f"[PLANNER] Next-step suggestion failed ({exc}); using stage defaults")
            return self.default_next_steps(stage, context)

        if len(steps) < 3:
            print("[PLANNER] Too few next steps suggested; padding with stage defaults")
            for step in self.default_next_steps(stage, context):
                if step not in steps:
                    steps.append(step)
        return steps[:5]

    @staticmethod
    def default_next_steps(stage: Stage, context: SharedContext) -> List[str]:
        if stage in (Stage.EDA, Stage.ESTIMATION) and context.dataset is None:
            return list(NO_DATASET_STEPS)
        return list(DEFAULT_NEXT_STEPS[stage])
