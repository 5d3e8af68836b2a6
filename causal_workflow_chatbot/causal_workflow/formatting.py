"""Markdown rendering of stage results for the chat display."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .agents.base import NO_CODE
from .models import STAGE_LABELS, AgentResult, DatasetInfo, SharedContext, Stage


def _bullets(items: List[Any]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _code_section(data: Dict[str, Any]) -> str:
    code = data.get("python_code")
    parts = []
    if code and code.strip() != NO_CODE:
        parts.append(f"```python\n{code.rstrip()}\n```")
    output = data.get("execution_output")
    if output:
        parts.append(f"**Execution output:**\n{output}")
    elif data.get("execution_success") is None and code and code.strip() != NO_CODE:
        parts.append("_Code was not executed; run it in your own environment._")
    return "\n\n".join(parts)


def _eda(data: Dict[str, Any]) -> str:
    lines = [data.get("summary") or "EDA analysis completed"]
    checks = data.get("checks") or []
    if checks:
        lines.append("**Checks:**\n" + _bullets(f"{c['name']} ({c['status']}): {c.get('details', '')}" for c in checks))
    violations = data.get("violations") or []
    if violations:
        lines.append(
            "**Assumption violations:**\n"
            + _bullets(f"[{v['severity']}] {v['assumption']}: {v.get('description', '')}" for v in violations)
        )
    if data.get("recommendations"):
        lines.append("**Recommendations:**\n" + _bullets(data["recommendations"]))
    return "\n\n".join(lines)


def _dag(data: Dict[str, Any]) -> str:
    lines = [data.get("explanation") or "DAG constructed", f"```\n{data.get('visual_representation', '')}\n```"]
    issues = (data.get("validation") or {}).get("issues") or []
    if issues:
        lines.append("**Structural issues:**\n" + _bullets(issues))
    if data.get("suggested_confounders"):
        lines.append(f"**Suggested confounders:** {', '.join(data['suggested_confounders'])}")
    return "\n\n".join(lines)


def _identification(data: Dict[str, Any]) -> str:
    verdict = "identifiable" if data.get("is_identifiable") else "not identifiable"
    lines = [f"The causal effect is **{verdict}** ({data.get('criterion', 'backdoor')} criterion)."]
    if data.get("recommended_set"):
        lines.append(f"**Recommended adjustment set:** {', '.join(data['recommended_set'])}")
    if data.get("explanation"):
        lines.append(data["explanation"])
    if data.get("warnings"):
        lines.append("**Warnings:**\n" + _bullets(data["warnings"]))
    return "\n\n".join(lines)


def _estimation(data: Dict[str, Any]) -> str:
    estimate = data.get("estimate") or {}
    effect = estimate.get("effect")
    lines = [f"**Method:** {data.get('method', 'regression')}"]
    if effect is not None:
        line = f"**Estimated effect:** {effect:.4g}"
        interval = estimate.get("confidence_interval")
        if interval:
            line += f" (95% CI {interval[0]:.4g} to {interval[1]:.4g})"
        lines.append(line)
    else:
        lines.append("**Estimated effect:** not computed yet (run the code below)")
    for key, title in (("explanation", None), ("interpretation", "Interpretation")):
        if data.get(key):
            lines.append(f"**{title}:** {data[key]}" if title else data[key])
    if data.get("limitations"):
        lines.append("**Limitations:**\n" + _bullets(data["limitations"]))
    return "\n\n".join(lines)


_RENDERERS = {
    Stage.EDA: _eda,
    Stage.DAG: _dag,
    Stage.IDENTIFICATION: _identification,
    Stage.ESTIMATION: _estimation,
}


def format_stage_result(stage: Stage, result: AgentResult) -> str:
    data = result.data or {}
    renderer = _RENDERERS.get(stage)
    body = renderer(data) if renderer else (data.get("summary") or f"{STAGE_LABELS[stage]} completed")
    code = _code_section(data)
    header = f"### {STAGE_LABELS[stage]}"
    return "\n\n".join(part for part in (header, body, code) if part)


def format_feedback(result: AgentResult) -> Optional[str]:
    feedback = result.feedback
    if feedback is None:
        return None
    icon = {"warning": "⚠️", "error": "❌", "info": "ℹ️", "success": "✅"}[feedback.type]
    text = f"{icon} {feedback.message}"
    if feedback.suggested_action:
        text += f"\n\n**Suggested action:** {feedback.suggested_action}"
    return text


def format_dataset(info: DatasetInfo) -> str:
    lines = [
        f"Loaded **{info.name}**: {info.rows} rows, {len(info.columns)} columns.",
        f"**Columns:** {', '.join(info.columns)}",
    ]
    if info.treatment_column or info.outcome_column:
        lines.append(
            f"Matched treatment column: {info.treatment_column or 'none'}; "
            f"outcome column: {info.outcome_column or 'none'}"
        )
    return "\n\n".join(lines)


def format_next_steps(steps: List[str]) -> str:
    return "**Suggested next steps:**\n" + "\n".join(f"{i}. {step}" for i, step in enumerate(steps, 1))


def format_status(context: SharedContext, stage: Stage) -> str:
    return f"**Current stage:** {STAGE_LABELS[stage]}\n\n" + "\n".join(
        f"- {line}" for line in _status_lines(context)
    )


def _status_lines(context: SharedContext) -> List[str]:
    return [
        f"Treatment: {context.treatment or 'not defined'}",
        f"Outcome: {context.outcome or 'not defined'}",
        f"Confounders: {', '.join(context.confounders) or 'none yet'}",
        f"Dataset: {context.dataset.name if context.dataset else 'not loaded'}",
        f"Adjustment set: {', '.join(context.adjustment_set) if context.adjustment_set else 'not identified'}",
    ]
