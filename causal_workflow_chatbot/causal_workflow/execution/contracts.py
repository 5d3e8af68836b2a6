from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CellOutput:
    """One output item of an executed cell."""

    output_type: str  # stream | display_data | execute_result | error
    text: Optional[str] = None
    data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CellOutput":
        return cls(
            output_type=payload.get("output_type") or "stream",
            text=payload.get("text"),
            data=payload.get("data"),
            metadata=payload.get("metadata") or {},
        )


@dataclass
class ExecutionError:
    name: str
    message: str
    traceback: List[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Normalized payload returned by the code-execution service."""

    success: bool
    outputs: List[CellOutput] = field(default_factory=list)
    error: Optional[ExecutionError] = None
    execution_time_ms: int = 0

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ExecutionResult":
        error = payload.get("error")
        return cls(
            success=bool(payload.get("success", False)),
            outputs=[CellOutput.from_dict(o) for o in payload.get("outputs") or []],
            error=(
                ExecutionError(
                    name=error.get("name", "Error"),
                    message=error.get("message", ""),
                    traceback=error.get("traceback") or [],
                )
                if isinstance(error, dict)
                else None
            ),
            execution_time_ms=int(payload.get("execution_time_ms") or 0),
        )

    @classmethod
    def failure(cls, name: str, message: str, elapsed_ms: int = 0) -> "ExecutionResult":
        return cls(success=False, error=ExecutionError(name=name, message=message), execution_time_ms=elapsed_ms)
