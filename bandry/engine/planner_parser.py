"""Tolerant extraction of planner actions from raw model text.

Planner models wrap their JSON in prose, code fences, or both. The
scanner walks the text once, tracking brace depth and string/escape
state, and returns the first balanced top-level object. Parsing
never raises: anything unusable yields None.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from .models import PlannerAction, PlannerAnswer, PlannerToolAction

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


def _fenced_candidate(text: str, opener: str, closer: str) -> str | None:
    match = _FENCE_RE.search(text)
    if match is None:
        return None
    candidate = match.group(1).strip()
    if candidate.startswith(opener) and candidate.endswith(closer):
        return candidate
    return None


def scan_balanced(text: str, opener: str = "{", closer: str = "}") -> str | None:
    """Return the first balanced opener..closer span, or None.

    Brackets inside JSON string literals (including escaped quotes)
    do not count toward depth.
    """
    start = text.find(opener)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start:index + 1].strip()
    return None


def extract_json_object(text: str) -> str | None:
    """Fenced ```json {...}``` first, then the first balanced object."""
    fenced = _fenced_candidate(text, "{", "}")
    if fenced is not None:
        return fenced
    return scan_balanced(text, "{", "}")


def extract_json_array(text: str) -> str | None:
    """Fenced ```json [...]``` first, then the first balanced array."""
    fenced = _fenced_candidate(text, "[", "]")
    if fenced is not None:
        return fenced
    return scan_balanced(text, "[", "]")


def load_json_object(text: str) -> dict[str, Any] | None:
    """Extract and decode the first JSON object in *text*."""
    candidate = extract_json_object(text)
    if candidate is None:
        return None
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def looks_like_json_action(text: str) -> bool:
    """True when *text* appears to be (possibly broken) structured output."""
    trimmed = text.strip()
    if not trimmed:
        return False
    return (
        trimmed.startswith("{")
        or trimmed.lower().startswith("```json")
        or '"action"' in trimmed
        or '"tool"' in trimmed
    )


def try_parse_planner_action(raw_text: str) -> PlannerAction | None:
    """Parse raw planner output into a PlannerAction, or None."""
    root = load_json_object(raw_text)
    if root is None:
        return None

    action = root.get("action")
    if action == "answer":
        answer = root.get("answer")
        answer = answer.strip() if isinstance(answer, str) else ""
        if not answer:
            return None
        return PlannerAnswer(answer=answer)

    if action == "tool":
        tool = root.get("tool")
        if not isinstance(tool, str) or not tool.strip():
            return None
        raw_input = root.get("input")
        tool_input = raw_input if isinstance(raw_input, dict) else {}
        reason = root.get("reason")
        return PlannerToolAction(
            tool=tool.strip(),
            input=tool_input,
            reason=reason if isinstance(reason, str) else None,
        )

    logger.debug("Planner JSON has unknown action=%r", action)
    return None
