from .contracts import CellOutput, ExecutionError, ExecutionResult
from .client import LocalCodeExecutor
from .output_parser import format_result_for_chat

__all__ = [
    "CellOutput",
    "ExecutionError",
    "ExecutionResult",
    "LocalCodeExecutor",
    "format_result_for_chat",
]
