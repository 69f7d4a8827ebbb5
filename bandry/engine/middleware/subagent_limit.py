"""Upper bound on sub-tasks requested by one delegation action."""
from __future__ import annotations

import json
import logging
from dataclasses import replace

from ..models import LlmResponse, MiddlewareContext, ToolCall
from ..planner_parser import load_json_object
from .base import Middleware

logger = logging.getLogger(__name__)

DELEGATE_TOOL = "delegate_sub_tasks"
MAX_CONCURRENT_SUBAGENTS = 3


def _truncate_tool_calls(
    tool_calls: list[ToolCall] | None, limit: int,
) -> list[ToolCall] | None:
    if not tool_calls:
        return tool_calls
    patched: list[ToolCall] = []
    for call in tool_calls:
        tasks = call.arguments.get("tasks")
        if call.name == DELEGATE_TOOL and isinstance(tasks, list) and len(tasks) > limit:
            call = replace(call, arguments={**call.arguments, "tasks": tasks[:limit]})
        patched.append(call)
    return patched


class SubagentLimitMiddleware(Middleware):
    """Truncates ``input.tasks`` of a delegation action to the maximum."""

    name = "subagent_limit"

    def __init__(self, max_concurrent: int = MAX_CONCURRENT_SUBAGENTS) -> None:
        self.max_concurrent = max_concurrent

    async def after_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        response = ctx.llm_response
        if response is None or not response.content:
            return ctx

        parsed = load_json_object(response.content)
        if parsed is None or parsed.get("action") != "tool" or parsed.get("tool") != DELEGATE_TOOL:
            return ctx

        tool_input = parsed.get("input")
        tool_input = tool_input if isinstance(tool_input, dict) else {}
        tasks = tool_input.get("tasks")
        if not isinstance(tasks, list) or len(tasks) <= self.max_concurrent:
            return ctx

        dropped = len(tasks) - self.max_concurrent
        truncated = {
            **parsed,
            "input": {**tool_input, "tasks": tasks[:self.max_concurrent]},
        }
        logger.info(
            "Delegation truncated task=%s: %d requested, %d dropped (max %d)",
            ctx.task_id[:8], len(tasks), dropped, self.max_concurrent,
        )
        patched = LlmResponse(
            content=json.dumps(truncated, ensure_ascii=False),
            tool_calls=_truncate_tool_calls(response.tool_calls, self.max_concurrent),
        )
        return ctx.evolve(llm_response=patched).with_metadata(
            subagent_truncated_count=dropped,
            subagent_max_concurrent=self.max_concurrent,
        )
