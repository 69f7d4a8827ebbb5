"""Ordered middleware hook runner.

Phase order is fixed; within a phase, middlewares run in registration
order and each receives the previous one's context. The pipeline has
two parts: ordinary middlewares, and one optional terminal tool
interceptor that always runs after them.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from ..errors import CancellationError, MiddlewareError, MiddlewareOrderError
from ..models import ContextState, MiddlewareContext, PlannerToolAction, ToolObservation
from .base import (
    Hook,
    Middleware,
    ModelExecutor,
    Phase,
    TerminalToolInterceptor,
    ToolCallHandler,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PhaseRunner:
    state: ContextState
    hook_name: str
    hook: Callable[[Middleware], Hook]


# Canonical runner first, legacy runner second, per phase.
_PHASE_RUNNERS: dict[Phase, tuple[_PhaseRunner, _PhaseRunner]] = {
    Phase.BEFORE_AGENT: (
        _PhaseRunner(ContextState.BEFORE_AGENT, "before_agent", lambda m: m.before_agent),
        _PhaseRunner(ContextState.REQUEST, "on_request", lambda m: m.on_request),
    ),
    Phase.BEFORE_MODEL: (
        _PhaseRunner(ContextState.BEFORE_MODEL, "before_model", lambda m: m.before_model),
        _PhaseRunner(ContextState.BEFORE_LLM, "before_llm", lambda m: m.before_llm),
    ),
    Phase.AFTER_MODEL: (
        _PhaseRunner(ContextState.AFTER_MODEL, "after_model", lambda m: m.after_model),
        _PhaseRunner(ContextState.AFTER_LLM, "after_llm", lambda m: m.after_llm),
    ),
    Phase.AFTER_AGENT: (
        _PhaseRunner(ContextState.AFTER_AGENT, "after_agent", lambda m: m.after_agent),
        _PhaseRunner(ContextState.RESPONSE, "on_response", lambda m: m.on_response),
    ),
}


def _hook_error(middleware: Middleware, hook_name: str, exc: Exception) -> MiddlewareError:
    logger.exception("Middleware %s failed at %s", middleware.name, hook_name)
    return MiddlewareError(middleware.name, hook_name, str(exc) or exc.__class__.__name__)


class MiddlewarePipeline:
    """Runs middleware hooks around model calls and tool executions."""

    def __init__(
        self,
        middlewares: Iterable[Middleware] = (),
        terminal: TerminalToolInterceptor | None = None,
    ) -> None:
        self._middlewares: list[Middleware] = []
        self._terminal = terminal
        for middleware in middlewares:
            self.use(middleware)

    @classmethod
    def from_sequence(
        cls,
        middlewares: Sequence[Middleware],
        tool_wrapping: bool = True,
    ) -> MiddlewarePipeline:
        """Build from a flat list whose last entry may be the terminal unit.

        Raises:
            MiddlewareOrderError: for a tool-wrapping pipeline whose
                terminal interceptor is missing or not last.
        """
        names = [m.name for m in middlewares]
        terminals = [
            i for i, m in enumerate(middlewares)
            if isinstance(m, TerminalToolInterceptor)
        ]
        if tool_wrapping:
            if terminals != [len(middlewares) - 1]:
                raise MiddlewareOrderError(
                    "the terminal tool interceptor must be registered exactly once, last",
                    names,
                )
            return cls(middlewares[:-1], terminal=middlewares[-1])
        if terminals:
            raise MiddlewareOrderError(
                "a terminal tool interceptor needs a tool-wrapping pipeline", names,
            )
        return cls(middlewares)

    def use(self, middleware: Middleware) -> None:
        """Register an ordinary middleware after those already registered."""
        if isinstance(middleware, TerminalToolInterceptor):
            raise MiddlewareOrderError(
                f"{middleware.name} is a terminal tool interceptor and cannot be "
                "registered as an ordinary middleware",
                self.names + [middleware.name],
            )
        self._middlewares.append(middleware)

    @property
    def middlewares(self) -> list[Middleware]:
        """All middlewares in execution order, terminal last."""
        if self._terminal is None:
            return list(self._middlewares)
        return [*self._middlewares, self._terminal]

    @property
    def terminal(self) -> TerminalToolInterceptor | None:
        return self._terminal

    @property
    def names(self) -> list[str]:
        return [m.name for m in self.middlewares]

    async def run_phase(self, phase: Phase, ctx: MiddlewareContext) -> MiddlewareContext:
        if phase not in _PHASE_RUNNERS:
            raise ValueError(f"{phase.value} is not a sequential phase")
        for runner in _PHASE_RUNNERS[phase]:
            ctx = ctx.evolve(state=runner.state)
            for middleware in self.middlewares:
                try:
                    ctx = await runner.hook(middleware)(ctx)
                except (CancellationError, MiddlewareError):
                    raise
                except Exception as exc:
                    raise _hook_error(middleware, runner.hook_name, exc) from exc
        return ctx

    async def run_before_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return await self.run_phase(Phase.BEFORE_AGENT, ctx)

    async def run_before_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return await self.run_phase(Phase.BEFORE_MODEL, ctx)

    async def run_after_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return await self.run_phase(Phase.AFTER_MODEL, ctx)

    async def run_after_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        return await self.run_phase(Phase.AFTER_AGENT, ctx)

    async def execute_model(
        self, ctx: MiddlewareContext, executor: ModelExecutor,
    ) -> MiddlewareContext:
        """before_model -> executor -> after_model.

        Executor failures propagate unwrapped; the caller annotates them.
        """
        ctx = await self.run_before_model(ctx)
        ctx = await executor(ctx)
        return await self.run_after_model(ctx)

    async def execute_tool_call(
        self,
        ctx: MiddlewareContext,
        action: PlannerToolAction,
        executor: ToolCallHandler,
    ) -> ToolObservation:
        """Run *executor* inside every wrap_tool_call hook.

        The first registered middleware is outermost; the terminal
        interceptor sits directly around the executor.
        """
        handler = executor
        for middleware in reversed(self.middlewares):
            handler = self._bind_wrapper(middleware, handler)
        return await handler(ctx, action)

    @staticmethod
    def _bind_wrapper(middleware: Middleware, next_handler: ToolCallHandler) -> ToolCallHandler:
        async def wrapped(ctx: MiddlewareContext, action: PlannerToolAction) -> ToolObservation:
            try:
                return await middleware.wrap_tool_call(ctx, action, next_handler)
            except (CancellationError, MiddlewareError):
                raise
            except Exception as exc:
                raise _hook_error(middleware, Phase.WRAP_TOOL_CALL.value, exc) from exc
        return wrapped

    async def execute(
        self, ctx: MiddlewareContext, executor: ModelExecutor,
    ) -> MiddlewareContext:
        """One-shot lifecycle around a single model call, no tool loop."""
        try:
            ctx = await self.run_before_agent(ctx)
            ctx = await self.execute_model(ctx, executor)
            return await self.run_after_agent(ctx)
        finally:
            await self.release(ctx)

    async def release(self, ctx: MiddlewareContext) -> None:
        """Call every release hook; failures are logged, never raised."""
        for middleware in self.middlewares:
            try:
                await middleware.release(ctx)
            except Exception:
                logger.exception("Middleware %s failed at release", middleware.name)
