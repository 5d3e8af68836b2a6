"""
Workflow router / session manager.

One call to ``process_message`` is one conversational turn:

    user message -> planner (intent + plan) -> prerequisite gate
                 -> stage agent (or control / dataset / general handler)
                 -> copy-on-write context merge + stage bookkeeping
                 -> forward-only auto-advance -> next-step suggestions

Everything the user sees goes to a display sink; the whole turn runs under
the session's lock.
"""

from __future__ import annotations

import traceback
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from .agents import BaseStageAgent
from .config import LOW_CONFIDENCE_THRESHOLD
from .context import merge_context
from .datasets import load_dataset
from .display import DisplaySink, assistant_message, error_message, system_message
from .errors import PrerequisiteUnmet, ServiceInvocationError, WorkflowError
from .formatting import (
    format_dataset,
    format_feedback,
    format_next_steps,
    format_stage_result,
    format_status,
)
from .models import (
    STAGE_LABELS,
    STAGE_ORDER,
    AgentResult,
    ConversationTurn,
    DatasetInfo,
    DisplayMessage,
    IterationRecord,
    PlannerResult,
    Stage,
    Task,
    WorkflowSession,
    stage_index,
)
from .planner import IntentPlanner, extract_csv_path
from .prerequisites import check_prerequisites
from .session_store import SessionRegistry

GREETING_TEXT = """Hello! I'm a causal inference assistant. I guide you through a structured analysis:

1. **Problem Formulation**: define treatment, outcome and confounders
2. **Exploratory Data Analysis**: check positivity, balance and missing data
3. **DAG Construction**: draw the causal graph
4. **Identification**: choose an adjustment set
5. **Estimation**: estimate the causal effect

Ask a causal question such as "Does aspirin reduce heart attacks?" to get started."""

HELP_TEXT = """Here is how to use the workflow:

- Ask a causal question ("What is the effect of X on Y?") to formulate the problem
- Upload a CSV (or say "load data/my_file.csv") to attach a dataset
- Say "explore the data" to run assumption checks
- Say "build the DAG", "identify the adjustment set" or "estimate the effect" for later stages
- Say "continue" to see what comes next, or "restart" to start over"""


class _RecordingSink:
    """Forwards to the real sink and remembers assistant text for the history."""

    def __init__(self, sink: DisplaySink) -> None:
        self.sink = sink
        self.assistant_texts: List[str] = []

    async def emit(self, message: DisplayMessage) -> None:
        if message.kind in ("assistant-message", "error"):
            self.assistant_texts.append(message.content)
        await self.sink.emit(message)


def critical_violations(result: AgentResult) -> List[dict]:
    violations = (result.data or {}).get("violations") or []
    return [v for v in violations if isinstance(v, dict) and v.get("severity") == "critical"]


class WorkflowRouter:
    def __init__(
        self,
        planner: IntentPlanner,
        agents: Dict[Stage, BaseStageAgent],
        registry: SessionRegistry,
        low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
    ) -> None:
        self.planner = planner
        self.agents = agents
        self.registry = registry
        self.low_confidence_threshold = low_confidence_threshold

    # ------------------------------------------------------------------
    # Stage order
    # ------------------------------------------------------------------

    def next_stage(self, stage: Stage) -> Stage:
        """Next stage after ``stage`` with a registered agent; never past Estimation."""
        for candidate in STAGE_ORDER[stage_index(stage) + 1:]:
            if candidate in self.agents:
                return candidate
        return stage

    @staticmethod
    def _forward(current: Stage, candidate: Stage) -> Stage:
        return candidate if stage_index(candidate) > stage_index(current) else current

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process_message(self, session_id: Optional[str], message: str, sink: DisplaySink) -> WorkflowSession:
        session_id = session_id or str(uuid.uuid4())
        async with self.registry.lock_for(session_id):
            session = self.registry.get_or_create(session_id)
            recorder = _RecordingSink(sink)
            print(f"[ROUTER] Session {session_id} stage={session.current_stage.value} message='{message[:80]}'")
            try:
                session = await self._process_turn(session, message, recorder)
            except Exception as exc:
                print(f"[ERROR] Turn failed for session {session_id}: {exc}")
                traceback.print_exc()
                await recorder.emit(error_message(f"Something went wrong while processing your message: {exc}"))
            if recorder.assistant_texts:
                session.conversation_history.append(
                    ConversationTurn(role="assistant", content="\n\n".join(recorder.assistant_texts))
                )
            self.registry.save(session)
            return session

    async def attach_dataset(self, session_id: str, path: str, sink: Optional[DisplaySink] = None) -> DatasetInfo:
        """Load a CSV into the session outside a chat turn (upload endpoint)."""
        async with self.registry.lock_for(session_id):
            session = self.registry.get_or_create(session_id)
            info = await self._attach_dataset(session, path)
            self.registry.save(session)
        if sink is not None:
            await sink.emit(assistant_message(format_dataset(info), agent_name="Data Loader"))
        return info

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _process_turn(self, session: WorkflowSession, message: str, sink: _RecordingSink) -> WorkflowSession:
        history = list(session.conversation_history)
        session.conversation_history.append(ConversationTurn(role="user", content=message))

        plan = await self.planner.analyze(message, history, session.shared_context, session.current_stage)

        if plan.confidence < self.low_confidence_threshold:
            await sink.emit(
                system_message(
                    f"Interpreting your request as **{plan.intent.type}** "
                    f"(confidence {plan.confidence:.0%}). {plan.reasoning}",
                    confidence=plan.confidence,
                )
            )

        missing = check_prerequisites(plan, session.shared_context)
        if missing:
            unmet = PrerequisiteUnmet(missing)
            print(f"[ROUTER] {unmet}")
            await sink.emit(
                assistant_message(
                    "Before I can do that, a few things are needed:\n\n"
                    + "\n".join(f"- {item}" for item in unmet.missing),
                    agent_name="Planner",
                    missing_prerequisites=unmet.missing,
                )
            )
        else:
            if len(plan.execution_plan.steps) > 1:
                await sink.emit(system_message(self._plan_summary(plan)))
            session = await self._dispatch(session, plan, message, sink)

        await self._suggest_next_steps(session, sink)
        return session

    async def _dispatch(
        self,
        session: WorkflowSession,
        plan: PlannerResult,
        message: str,
        sink: _RecordingSink,
    ) -> WorkflowSession:
        intent_type = plan.intent.type
        if intent_type == "workflow_control":
            return await self._handle_control(session, plan, sink)
        if intent_type == "dataset_operation":
            await self._handle_dataset_operation(session, plan, message, sink)
            return session
        if intent_type == "general_question":
            await self._handle_general(session, plan, sink)
            return session
        await self._run_stage(session, Stage(intent_type), plan, message, sink)
        return session

    # ------------------------------------------------------------------
    # Stage dispatch
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        session: WorkflowSession,
        stage: Stage,
        plan: PlannerResult,
        message: str,
        sink: _RecordingSink,
    ) -> None:
        agent = self.agents.get(stage)
        if agent is None:
            await sink.emit(
                assistant_message(f"The {STAGE_LABELS[stage]} stage is not available in this workflow.", stage=stage)
            )
            return

        task = Task(
            id=str(uuid.uuid4()),
            stage=stage,
            description=plan.intent.user_goal or f"Run {STAGE_LABELS[stage]}",
            input=message,
            metadata={
                "causal_spec": plan.causal_spec.model_dump(),
                "intent_subtype": plan.intent.subtype,
                "session_id": session.session_id,
            },
        )
        state = session.stages[stage]
        state.status = "in_progress"
        state.attempts += 1
        print(f"[ROUTER] Dispatching {agent.name} (attempt {state.attempts})")

        executor = self.registry.executor_for(session.session_id)
        try:
            result = await agent.execute(task, session.shared_context, executor)
        except Exception as exc:
            state.status = "failed"
            state.iterations.append(
                IterationRecord(
                    iteration=state.attempts,
                    timestamp=datetime.now().isoformat(),
                    action=task.description,
                    result={"success": False, "requires_iteration": False, "error": str(exc)},
                )
            )
            raise

        state.iterations.append(
            IterationRecord(
                iteration=state.attempts,
                timestamp=datetime.now().isoformat(),
                action=task.description,
                result={
                    "success": result.success,
                    "requires_iteration": result.requires_iteration,
                    "error": result.error,
                },
            )
        )

        if not result.success:
            state.status = "failed"
            text = f"{agent.name} failed: {result.error}"
            if result.feedback and result.feedback.suggested_action:
                text += f"\n\nSuggested action: {result.feedback.suggested_action}"
            await sink.emit(error_message(text, agent_name=agent.name, stage=stage))
            return

        session.shared_context = merge_context(session.shared_context, result.context_updates, agent.writes)
        state.result = result.data

        await sink.emit(
            assistant_message(
                format_stage_result(stage, result),
                agent_name=agent.name,
                stage=stage,
                parse_mode=(result.data or {}).get("parse_mode"),
                requires_iteration=result.requires_iteration,
            )
        )
        for diagnostic in result.diagnostics:
            await sink.emit(system_message(diagnostic, agent=agent.name))

        critical = critical_violations(result)
        if result.requires_iteration or critical:
            feedback = format_feedback(result)
            if feedback:
                await sink.emit(assistant_message(feedback, agent_name=agent.name, stage=stage))
            session.current_stage = self._forward(session.current_stage, stage)
            print(
                f"[ROUTER] {stage.value} needs another pass "
                f"(requires_iteration={result.requires_iteration}, critical={len(critical)})"
            )
            return

        state.status = "completed"
        before = session.current_stage
        session.current_stage = self._forward(session.current_stage, self.next_stage(stage))
        if session.current_stage != before:
            print(f"[ROUTER] Advanced {before.value} -> {session.current_stage.value}")
            session.stages[session.current_stage].status = "in_progress"

    # ------------------------------------------------------------------
    # Non-stage handlers
    # ------------------------------------------------------------------

    async def _handle_control(
        self,
        session: WorkflowSession,
        plan: PlannerResult,
        sink: _RecordingSink,
    ) -> WorkflowSession:
        subtype = (plan.intent.subtype or "").lower()
        if subtype == "restart":
            history = session.conversation_history[-1:]
            session = await self.registry.restart(session.session_id)
            session.conversation_history.extend(history)
            await sink.emit(
                assistant_message("Workflow restarted. Ask a causal question to begin a new analysis.")
            )
            return session

        if subtype in ("continue", "affirmative"):
            stage = session.current_stage
            state = session.stages[stage]
            label = STAGE_LABELS[stage]
            if state.status == "in_progress" and state.attempts > 0:
                text = (
                    f"We are still on **{label}**. The last attempt needs another pass; "
                    "refine your request or provide the missing details to run it again."
                )
            elif state.status == "completed":
                text = f"**{label}** is complete. You can review the results or start a new question."
            else:
                text = f"Next up: **{label}**. Tell me when you want to run it, or add details first."
            await sink.emit(assistant_message(text + "\n\n" + format_status(session.shared_context, stage), stage=stage))
            return session

        await sink.emit(assistant_message(HELP_TEXT))
        return session

    async def _handle_dataset_operation(
        self,
        session: WorkflowSession,
        plan: PlannerResult,
        message: str,
        sink: _RecordingSink,
    ) -> None:
        path = extract_csv_path(message)
        if path is None:
            path = next((r for r in plan.causal_spec.data_requirements if r.lower().endswith(".csv")), None)
        if path is None:
            await sink.emit(
                assistant_message(
                    "Upload a CSV file with the upload button, or give me a path such as `data/study.csv`.",
                    agent_name="Data Loader",
                )
            )
            return
        try:
            info = await self._attach_dataset(session, path)
        except (FileNotFoundError, ValueError) as exc:
            await sink.emit(error_message(f"Could not load dataset: {exc}", agent_name="Data Loader"))
            return
        await sink.emit(assistant_message(format_dataset(info), agent_name="Data Loader"))

    async def _attach_dataset(self, session: WorkflowSession, path: str) -> DatasetInfo:
        info = load_dataset(path, session.shared_context)
        session.shared_context = merge_context(session.shared_context, {"dataset": info}, ("dataset",))
        executor = self.registry.executor_for(session.session_id)
        if executor is not None and info.path:
            try:
                await executor.connect(info.path)
            except ServiceInvocationError as exc:
                print(f"[WARNING] Executor not connected: {exc}")
        print(f"[SESSION] Dataset {info.name} attached to {session.session_id}")
        return info

    async def _handle_general(self, session: WorkflowSession, plan: PlannerResult, sink: _RecordingSink) -> None:
        subtype = (plan.intent.subtype or "").lower()
        if subtype == "greeting":
            await sink.emit(assistant_message(GREETING_TEXT))
            return
        if subtype == "help":
            await sink.emit(assistant_message(HELP_TEXT))
            return
        text = plan.reasoning if plan.reasoning and not plan.reasoning.startswith("Fallback") else (
            "I can help with causal questions. Try asking about the effect of one variable on another."
        )
        await sink.emit(assistant_message(text + "\n\n" + format_status(session.shared_context, session.current_stage)))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _plan_summary(plan: PlannerResult) -> str:
        lines = [f"**Plan** ({plan.execution_plan.estimated_duration or 'duration unknown'}):"]
        for step in plan.execution_plan.steps:
            lines.append(f"{step.step_number}. {step.agent}: {step.action}")
        return "\n".join(lines)

    async def _suggest_next_steps(self, session: WorkflowSession, sink: _RecordingSink) -> None:
        try:
            steps = await self.planner.suggest_next_steps(
                session.shared_context,
                session.current_stage,
                session.conversation_history,
            )
        except WorkflowError as exc:
            print(f"[WARNING] Next-step suggestions skipped: {exc}")
            return
        if steps:
            await sink.emit(assistant_message(format_next_steps(steps), next_steps=steps))
