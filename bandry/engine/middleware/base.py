"""Middleware capability interface.

A middleware is a narrow policy unit that may take part in any of the
fixed lifecycle phases. Every hook has a pass-through default, so a
subclass overrides only the phases it cares about.

Canonical phases (the planner loop):
    before_agent -> [before_model -> model -> after_model]* -> after_agent
    wrap_tool_call wraps every tool execution.

Legacy phases (single model call, no tool loop) map onto the same
slots and run after the canonical hook of their slot:
    on_request (before_agent), before_llm (before_model),
    after_llm (after_model), on_response (after_agent).
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum

from ..models import MiddlewareContext, PlannerToolAction, ToolObservation

# Signature of one phase hook.
Hook = Callable[[MiddlewareContext], Awaitable[MiddlewareContext]]

# Next handler in the tool-wrapping chain.
ToolCallHandler = Callable[
    [MiddlewareContext, PlannerToolAction], Awaitable[ToolObservation]
]

# The model call a pipeline wraps with before_model / after_model.
ModelExecutor = Callable[[MiddlewareContext], Awaitable[MiddlewareContext]]


class Phase(str, Enum):
    BEFORE_AGENT = "before_agent"
    BEFORE_MODEL = "before_model"
    AFTER_MODEL = "after_model"
    AFTER_AGENT = "after_agent"
    WRAP_TOOL_CALL = "wrap_tool_call"


class Middleware:
    """Base class: every hook defaults to pass-through."""

    name: str = "middleware"

    async def before_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def before_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def after_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def after_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def wrap_tool_call(
        self,
        ctx: MiddlewareContext,
        action: PlannerToolAction,
        next_handler: ToolCallHandler,
    ) -> ToolObservation:
        return await next_handler(ctx, action)

    # Legacy four-phase vocabulary

    async def on_request(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def before_llm(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def after_llm(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def on_response(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return ctx

    async def release(self, ctx: MiddlewareContext) -> None:
        """Release request-scoped resources. Runs on every exit path."""
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name}>"


class TerminalToolInterceptor(Middleware):
    """Middleware that owns the innermost slot of the tool-wrapping chain.

    A pipeline holds at most one, always after every ordinary
    middleware, so it sees each tool call last and may short-circuit
    it before the executor runs.
    """
