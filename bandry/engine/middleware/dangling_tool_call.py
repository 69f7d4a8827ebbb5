"""Removal of malformed tool calls from a model response."""
from __future__ import annotations

import logging
from dataclasses import replace

from ..models import MiddlewareContext
from .base import Middleware

logger = logging.getLogger(__name__)


class DanglingToolCallMiddleware(Middleware):
    """Drops tool calls whose name is missing or blank."""

    name = "dangling_tool_call"

    async def before_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        response = ctx.llm_response
        if response is None or not response.tool_calls:
            return ctx

        kept = [
            call for call in response.tool_calls
            if isinstance(call.name, str) and call.name.strip()
        ]
        if len(kept) == len(response.tool_calls):
            return ctx

        logger.debug(
            "Dropped %d dangling tool calls task=%s",
            len(response.tool_calls) - len(kept), ctx.task_id[:8],
        )
        patched = ctx.evolve(
            llm_response=replace(response, tool_calls=kept)
        )
        return patched.with_metadata(
            dangling_tool_calls_patched=ctx.metadata.get("dangling_tool_calls_patched", 0) + 1,
        )
