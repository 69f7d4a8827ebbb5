"""Scoped binding of the shared sandbox to one request's workspace."""
from __future__ import annotations

import logging

from ..models import MiddlewareContext
from ..sandbox import SandboxService
from .base import Middleware

logger = logging.getLogger(__name__)


class SandboxBindingMiddleware(Middleware):
    """Binds in before_agent; unbinds in after_agent and on every other exit.

    The sandbox only clears a binding owned by the same task, so a
    late release can never drop another request's workspace.
    """

    name = "sandbox_binding"

    def __init__(self, sandbox: SandboxService) -> None:
        self._sandbox = sandbox

    async def before_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        if ctx.workspace_path:
            self._sandbox.set_workspace_context(ctx.task_id, ctx.workspace_path)
            return ctx.with_metadata(sandbox_bound=True)
        return ctx

    async def after_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        self._sandbox.clear_workspace_context(ctx.task_id)
        return ctx

    async def release(self, ctx: MiddlewareContext) -> None:
        if self._sandbox.clear_workspace_context(ctx.task_id):
            logger.debug("Sandbox binding released on exit task=%s", ctx.task_id[:8])
