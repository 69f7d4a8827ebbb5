"""Conversation title generation for untitled conversations."""
from __future__ import annotations

import logging

from ..config import fire_update
from ..errors import CancellationError
from ..model_routing import SYNTHESIZER_ROLE, resolve_runtime_target
from ..models import LlmMessage, MiddlewareContext, UpdateStage
from ..providers.base import GenerateTextRequest
from .base import Middleware

logger = logging.getLogger(__name__)

MAX_TITLE_LEN = 32
TITLE_PROMPT = (
    "Generate a concise conversation title. "
    f"Output plain text only, no quotes, max {MAX_TITLE_LEN} characters."
)


def truncate_title(title: str) -> str:
    normalized = " ".join(title.split()).strip().strip("\"'“”")
    if len(normalized) <= MAX_TITLE_LEN:
        return normalized
    return normalized[:MAX_TITLE_LEN - 1] + "…"


class TitleMiddleware(Middleware):
    """Writes a title once, only while the conversation has none."""

    name = "title"

    async def after_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        runtime = ctx.runtime
        if runtime is None or runtime.conversation_store is None or not ctx.conversation_id:
            return ctx

        store = runtime.conversation_store
        conversation = store.get_conversation(ctx.conversation_id)
        if conversation is None or (conversation.title or "").strip():
            return ctx

        first_user = next(
            (m.content.strip() for m in ctx.messages if m.role == "user"), "",
        )
        reply = (ctx.final_response or "").strip()
        if not first_user or not reply:
            return ctx

        try:
            target = resolve_runtime_target(runtime.config, SYNTHESIZER_ROLE)
            result = await runtime.models_factory.generate_text(GenerateTextRequest(
                runtime_config=target.runtime_config,
                model=target.model,
                messages=[
                    LlmMessage("system", TITLE_PROMPT),
                    LlmMessage("user", f"User request: {first_user}\nAssistant reply: {reply}"),
                ],
                temperature=0,
                max_tokens=40,
                abort_signal=runtime.abort_signal,
            ))
            title = truncate_title(result.text)
            ctx = ctx.add_middleware_latency(result.latency_ms)
        except CancellationError:
            raise
        except Exception:
            logger.debug("Title generation failed, using first user message", exc_info=True)
            title = ""
        if not title:
            title = truncate_title(first_user)

        store.update_conversation(ctx.conversation_id, title=title)
        logger.info("Conversation %s titled %r", ctx.conversation_id[:8], title)
        fire_update(runtime.on_update, UpdateStage.FINAL.value, f"title updated: {title}")
        return ctx.with_metadata(title_generated=True, generated_title=title)
