"""
Reply parsing for completion-service output.

Strict path: the first balanced top-level JSON object in the reply, validated
against a stage-specific pydantic schema. Degraded path: a line-based
heuristic extractor, returned as a distinct HeuristicReply so callers can tell
the two apart.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .errors import ResponseParseError

SchemaT = TypeVar("SchemaT", bound=BaseModel)

_CODE_BLOCK_RE = re.compile(r"```(?:python|py)?\s*\n(.*?)```", re.DOTALL)
_LIST_ITEM_RE = re.compile(r"^(?:[-*•]|\d+[.)])\s*")


def _balanced_span(text: str, start: int, opener: str, closer: str) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start: idx + 1]
    return None


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first top-level JSON object that decodes, or raise ResponseParseError."""
    if not text:
        raise ResponseParseError("Empty reply")
    start = text.find("{")
    while start != -1:
        candidate = _balanced_span(text, start, "{", "}")
        if candidate is None:
            break
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + len(candidate))
    raise ResponseParseError("No valid JSON object found in reply")


def extract_json_array(text: str) -> List[Any]:
    if not text:
        raise ResponseParseError("Empty reply")
    start = text.find("[")
    while start != -1:
        candidate = _balanced_span(text, start, "[", "]")
        if candidate is None:
            break
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            start = text.find("[", start + 1)
            continue
        if isinstance(value, list):
            return value
        start = text.find("[", start + 1)
    raise ResponseParseError("No valid JSON array found in reply")


# ============================================================================
# Heuristic helpers
# ============================================================================

def split_lines(text: str) -> List[str]:
    return [line.strip() for line in (text or "").splitlines()]


def extract_field(lines: List[str], keyword: str) -> Optional[str]:
    """Value after the first ':' on the first line mentioning ``keyword``."""
    keyword = keyword.lower()
    for line in lines:
        if keyword in line.lower() and ":" in line:
            value = line.split(":", 1)[1].strip().strip("*").strip()
            if value:
                return value
    return None


def extract_list(lines: List[str], *keywords: str) -> List[str]:
    """Bulleted or numbered items following a heading line that mentions a keyword."""
    items: List[str] = []
    in_list = False
    lowered_keywords = [k.lower() for k in keywords]
    for line in lines:
        lower = line.lower()
        if any(k in lower for k in lowered_keywords) and not _LIST_ITEM_RE.match(line):
            in_list = True
            continue
        if not in_list:
            continue
        if line == "":
            continue
        if _LIST_ITEM_RE.match(line):
            items.append(_LIST_ITEM_RE.sub("", line).strip())
        elif line[0].isupper():
            in_list = False
    return items


def extract_code_block(text: str) -> Optional[str]:
    match = _CODE_BLOCK_RE.search(text or "")
    return match.group(1) if match else None


# ============================================================================
# Tagged reply variants
# ============================================================================

@dataclass
class StructuredReply:
    payload: BaseModel
    mode: str = "structured"

    @property
    def empty(self) -> bool:
        return not self.payload.model_fields_set


@dataclass
class HeuristicReply:
    payload: BaseModel
    diagnostic: str
    mode: str = "heuristic"

    @property
    def empty(self) -> bool:
        return False


ParsedReply = Union[StructuredReply, HeuristicReply]


def parse_reply(
    text: str,
    schema: Type[SchemaT],
    heuristic: Callable[[str], SchemaT],
) -> ParsedReply:
    """
    Validate ``text`` against ``schema``; on failure run ``heuristic``.

    The heuristic is only called when strict parsing fails. If the heuristic
    itself raises, the ResponseParseError propagates to the caller.
    """
    try:
        raw = extract_json_object(text)
        return StructuredReply(payload=schema.model_validate(raw))
    except (ResponseParseError, ValidationError) as exc:
        reason = str(exc).splitlines()[0]
        print(f"[WARNING] Strict parse failed for {schema.__name__}: {reason}; using heuristic parser")

    try:
        payload = heuristic(text)
    except Exception as exc:
        raise ResponseParseError(f"Heuristic parsing failed for {schema.__name__}", original_error=exc) from exc
    return HeuristicReply(
        payload=payload,
        diagnostic="Reply was not valid structured output; fields were extracted heuristically (lower confidence)",
    )
