"""Helpers for turning execution results into chat text."""

from __future__ import annotations

from typing import Optional

from .contracts import CellOutput, ExecutionResult


def extract_text(result: ExecutionResult) -> str:
    return "\n".join(o.text for o in result.outputs if o.text)


def extract_error(result: ExecutionResult) -> Optional[str]:
    if result.error is None:
        return None
    lines = [f"{result.error.name}: {result.error.message}"]
    lines.extend(result.error.traceback)
    return "\n".join(lines)


def has_dataframe(output: CellOutput) -> bool:
    if output.output_type not in {"display_data", "execute_result"}:
        return False
    data = output.data if isinstance(output.data, str) else output.text or ""
    return "</table>" in data or "DataFrame" in data


def has_plot(output: CellOutput) -> bool:
    mime = output.metadata.get("mime")
    if mime in {"image/png", "image/svg+xml"}:
        return True
    return isinstance(output.data, str) and output.data.startswith("data:image")


def format_result_for_chat(result: ExecutionResult) -> str:
    if not result.success and result.error is not None:
        return f"**Execution Error**\n```\n{extract_error(result)}\n```"

    text = extract_text(result)
    formatted = "**Execution Successful**\n\n"
    if text:
        formatted += f"```\n{text}\n```\n\n"
    if any(has_dataframe(o) for o in result.outputs):
        formatted += "Output includes a DataFrame\n"
    if any(has_plot(o) for o in result.outputs):
        formatted += "Output includes a plot\n"
    formatted += f"\n_Execution time: {result.execution_time_ms} ms_"
    return formatted
