"""Memory queue placeholder.

Occupies the memory slot of the after_agent phase so the stack order
stays stable when a real memory backend is plugged in.
"""
from __future__ import annotations

import logging

from ..models import MiddlewareContext
from .base import Middleware

logger = logging.getLogger(__name__)


class NoopMemoryMiddleware(Middleware):
    name = "memory"

    async def after_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        logger.debug("Memory disabled, nothing queued task=%s", ctx.task_id[:8])
        return ctx
