"""Context compression before model calls.

When the prompt grows past the message or character threshold, every
message except the most recent ones is replaced by a single system
message holding a model-written summary. A failed summary call leaves
the prompt untouched; the request continues.
"""
from __future__ import annotations

import logging

from ..config import fire_update
from ..errors import CancellationError, raise_if_aborted
from ..model_routing import SYNTHESIZER_ROLE, resolve_runtime_target
from ..models import LlmMessage, MiddlewareContext, UpdateStage
from ..providers.base import GenerateTextRequest
from .base import Middleware

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = (
    "Summarize the conversation history for context compression. "
    "Keep facts, decisions, pending tasks, and unresolved issues. "
    "Output concise bullet points."
)
SUMMARY_PREFIX = "Conversation summary:\n"
SUMMARY_MAX_TOKENS = 600


class SummarizationMiddleware(Middleware):
    name = "summarization"

    def __init__(
        self,
        message_threshold: int = 24,
        char_threshold: int = 16_000,
        keep_recent: int = 8,
    ) -> None:
        self.message_threshold = message_threshold
        self.char_threshold = char_threshold
        self.keep_recent = keep_recent

    def should_summarize(self, messages: list[LlmMessage]) -> bool:
        if len(messages) > self.message_threshold:
            return True
        return sum(len(m.content) for m in messages) > self.char_threshold

    async def before_model(self, ctx: MiddlewareContext) -> MiddlewareContext:
        runtime = ctx.runtime
        messages = ctx.messages
        if runtime is None or not self.should_summarize(messages):
            return ctx

        split = max(0, len(messages) - self.keep_recent)
        leading, trailing = messages[:split], messages[split:]
        if not leading:
            return ctx

        fire_update(
            runtime.on_update, UpdateStage.MODEL.value,
            f"summarization triggered: {len(messages)} messages, compressing history",
        )
        raise_if_aborted(runtime.abort_signal, "summarization")

        try:
            target = resolve_runtime_target(runtime.config, SYNTHESIZER_ROLE)
            source = "\n".join(f"{m.role}: {m.content}" for m in leading)
            result = await runtime.models_factory.generate_text(GenerateTextRequest(
                runtime_config=target.runtime_config,
                model=target.model,
                messages=[
                    LlmMessage("system", SUMMARY_PROMPT),
                    LlmMessage("user", source),
                ],
                temperature=0,
                max_tokens=SUMMARY_MAX_TOKENS,
                abort_signal=runtime.abort_signal,
            ))
        except CancellationError:
            raise
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
            logger.warning(
                "Summarization failed task=%s, keeping %d messages: %s",
                ctx.task_id[:8], len(messages), reason,
            )
            fire_update(
                runtime.on_update, UpdateStage.MODEL.value,
                f"summarization failed: {reason}",
            )
            return ctx.with_metadata(
                summarization_applied=False,
                summarization_error=reason,
            )

        compressed = [LlmMessage("system", SUMMARY_PREFIX + result.text), *trailing]
        logger.info(
            "Summarization applied task=%s: %d -> %d messages",
            ctx.task_id[:8], len(messages), len(compressed),
        )
        fire_update(
            runtime.on_update, UpdateStage.MODEL.value,
            f"summarization applied: {len(messages)} -> {len(compressed)} messages",
        )
        return ctx.evolve(messages=compressed).with_metadata(
            summarization_applied=True,
            summarization_original_messages=len(messages),
            summarization_kept_messages=len(compressed),
            summarization_latency_ms=result.latency_ms,
        ).add_middleware_latency(result.latency_ms)
