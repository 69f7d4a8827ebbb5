"""Interception of clarification requests in the tool chain."""
from __future__ import annotations

from ..models import MiddlewareContext, PlannerToolAction, ToolObservation
from .base import TerminalToolInterceptor, ToolCallHandler

CLARIFICATION_TOOL = "ask_clarification"


class ClarificationMiddleware(TerminalToolInterceptor):
    """Short-circuits ``ask_clarification`` with a failed observation."""

    name = "clarification"

    async def wrap_tool_call(
        self,
        ctx: MiddlewareContext,
        action: PlannerToolAction,
        next_handler: ToolCallHandler,
    ) -> ToolObservation:
        if action.tool != CLARIFICATION_TOOL:
            return await next_handler(ctx, action)
        question = action.input.get("question")
        if not isinstance(question, str) or not question.strip():
            question = "Need clarification"
        return ToolObservation(
            tool=CLARIFICATION_TOOL,
            input=action.input,
            ok=False,
            output=f"Clarification required: {question.strip()}",
        )
