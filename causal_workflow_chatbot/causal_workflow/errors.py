"""
Error taxonomy for the workflow core.

- ServiceInvocationError: the completion or execution service could not be reached
- ResponseParseError: a reply carried no well-formed structured payload
- PrerequisiteUnmet: required context is missing, no stage agent may run
- ExecutionFailure: the execution service reported an error for generated code

Assumption violations are findings, not exceptions; see models.AssumptionViolation.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base exception for the causal workflow core."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.original_error = original_error
        super().__init__(message)

    def __str__(self) -> str:
        if self.original_error is not None:
            return f"{self.message} (cause: {self.original_error})"
        return self.message


class ServiceInvocationError(WorkflowError):
    """Network/API failure while calling the completion or execution service."""


class ResponseParseError(WorkflowError):
    """Reply did not contain well-formed structured data."""


class PrerequisiteUnmet(WorkflowError):
    def __init__(self, missing: List[str]) -> None:
        self.missing = list(missing)
        super().__init__("Missing prerequisites: " + "; ".join(self.missing))


class ExecutionFailure(WorkflowError):
    """Generated code ran but the execution service reported an error."""

    def __init__(self, name: str, message: str, traceback: Optional[List[str]] = None) -> None:
        self.name = name
        self.traceback = list(traceback or [])
        super().__init__(f"{name}: {message}")
