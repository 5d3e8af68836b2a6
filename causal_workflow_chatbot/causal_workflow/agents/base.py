from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

from ..errors import ExecutionFailure, ResponseParseError, ServiceInvocationError
from ..execution import ExecutionResult, format_result_for_chat
from ..models import AgentResult, Feedback, SharedContext, Stage, Task
from ..parsing import HeuristicReply, ParsedReply, parse_reply

NO_CODE = "# No code generated"


class BaseStageAgent:
    """
    Uniform wrapper: (task, shared context) -> completion call -> typed AgentResult.

    Subclasses declare the context fields they read and write, check their own
    inputs before the completion call, and turn a validated reply into a
    result. Context is never mutated here; writes travel in
    ``AgentResult.context_updates`` and are merged by the router.
    """

    stage: Stage
    name: str = "Stage Agent"
    reads: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ()
    system_prompt: str = ""
    reply_schema: Type[BaseModel]
    remediation: str = "Try rephrasing your request and run the stage again"

    def __init__(self, completion: Any) -> None:
        self.completion = completion

    @property
    def id(self) -> str:
        return f"{self.stage.value}-agent"

    def can_handle(self, task: Task) -> bool:
        return task.stage == self.stage

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def check_inputs(self, task: Task, context: SharedContext) -> Optional[AgentResult]:
        """Return a result to short-circuit before calling the completion service."""
        return None

    def build_prompt(self, task: Task, context: SharedContext) -> str:
        raise NotImplementedError

    def heuristic_parse(self, text: str, task: Task, context: SharedContext) -> BaseModel:
        raise NotImplementedError

    async def interpret(
        self,
        reply: BaseModel,
        task: Task,
        context: SharedContext,
        executor: Any = None,
    ) -> AgentResult:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def execute(self, task: Task, context: SharedContext, executor: Any = None) -> AgentResult:
        blocked = self.check_inputs(task, context)
        if blocked is not None:
            print(f"[AGENT] {self.name} blocked before completion call: {blocked.error or blocked.feedback.message}")
            return blocked

        prompt = self.build_prompt(task, context)
        try:
            text = await self.completion.complete(self.system_prompt, prompt)
        except ServiceInvocationError as exc:
            print(f"[ERROR] {self.name} completion call failed: {exc}")
            return self.error_result(str(exc), self.remediation)

        try:
            parsed = parse_reply(text, self.reply_schema, lambda t: self.heuristic_parse(t, task, context))
        except ResponseParseError as exc:
            print(f"[ERROR] {self.name} could not parse reply: {exc}")
            return self.error_result(str(exc), self.remediation)

        if parsed.empty:
            print(f"[AGENT] {self.name} received an empty structured reply; treating as no-op")
            return self.iteration_result(
                {"parse_mode": parsed.mode},
                f"The {self.name} returned an empty analysis, nothing was recorded",
                "Add more detail to your request and run this stage again",
                feedback_type="info",
            )

        try:
            result = await self.interpret(parsed.payload, task, context, executor)
        except (ValueError, TypeError, KeyError) as exc:
            print(f"[ERROR] {self.name} failed to interpret reply: {exc}")
            return self.error_result(f"{self.name} failed to interpret reply: {exc}", self.remediation)

        return self._tag_parse_mode(result, parsed)

    def _tag_parse_mode(self, result: AgentResult, parsed: ParsedReply) -> AgentResult:
        data = dict(result.data or {})
        data["parse_mode"] = parsed.mode
        diagnostics = list(result.diagnostics)
        if isinstance(parsed, HeuristicReply):
            diagnostics.append(parsed.diagnostic)
        return result.model_copy(update={"data": data, "diagnostics": diagnostics})

    # ------------------------------------------------------------------
    # Execution service
    # ------------------------------------------------------------------

    async def run_code(self, code: Optional[str], executor: Any) -> Optional[ExecutionResult]:
        """Run generated code when an executor is connected; None when unavailable."""
        if not code or code.strip() == NO_CODE or executor is None:
            return None
        if not getattr(executor, "connected", False):
            print(f"[EXEC] {self.name}: no dataset connected, skipping execution")
            return None
        try:
            return await executor.execute(code)
        except ServiceInvocationError as exc:
            print(f"[WARNING] {self.name}: execution service unavailable ({exc}); code left for manual use")
            return None

    @staticmethod
    def execution_failure(result: Optional[ExecutionResult]) -> Optional[ExecutionFailure]:
        if result is None or result.success or result.error is None:
            return None
        return ExecutionFailure(result.error.name, result.error.message, result.error.traceback)

    @staticmethod
    def execution_summary(result: Optional[ExecutionResult]) -> Dict[str, Any]:
        if result is None:
            return {"execution_success": None, "execution_output": None}
        return {
            "execution_success": result.success,
            "execution_output": format_result_for_chat(result),
        }

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    def success_result(
        self,
        data: Dict[str, Any],
        next_steps: Optional[List[str]] = None,
        updates: Optional[Dict[str, Any]] = None,
    ) -> AgentResult:
        return AgentResult(
            success=True,
            data=data,
            suggested_next_steps=next_steps or [],
            context_updates=updates or {},
        )

    def error_result(self, message: str, suggested_action: Optional[str] = None) -> AgentResult:
        return AgentResult(
            success=False,
            error=message,
            feedback=Feedback(type="error", message=message, suggested_action=suggested_action),
        )

    def iteration_result(
        self,
        data: Dict[str, Any],
        message: str,
        suggested_action: str,
        updates: Optional[Dict[str, Any]] = None,
        feedback_type: str = "warning",
    ) -> AgentResult:
        return AgentResult(
            success=True,
            data=data,
            feedback=Feedback(type=feedback_type, message=message, suggested_action=suggested_action),
            requires_iteration=True,
            context_updates=updates or {},
        )
