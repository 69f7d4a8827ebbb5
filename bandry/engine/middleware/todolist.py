"""Per-conversation task list for subagents mode."""
from __future__ import annotations

import logging

from ..conversation_store import ConversationStore
from ..models import ChatMode, MiddlewareContext, TodoItem
from .base import Middleware

logger = logging.getLogger(__name__)


def _store_of(ctx: MiddlewareContext) -> ConversationStore | None:
    return ctx.runtime.conversation_store if ctx.runtime else None


class TodoListMiddleware(Middleware):
    """Loads the list in before_agent and stores it in after_agent.

    Inactive outside subagents mode. The write_todos tool updates
    ``ctx.todos`` in between. Conversations known to the request's
    ConversationStore keep their list there; others fall back to this
    instance's own table.
    """

    name = "todolist"

    def __init__(self) -> None:
        self._todos_by_conversation: dict[str, list[TodoItem]] = {}

    async def before_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        if ctx.chat_mode != ChatMode.SUBAGENTS:
            return ctx
        if not ctx.conversation_id:
            return ctx.evolve(todos=[])
        store = _store_of(ctx)
        todos = store.get_todos(ctx.conversation_id) if store else None
        if todos is None:
            todos = self._todos_by_conversation.get(ctx.conversation_id, [])
        return ctx.evolve(todos=list(todos))

    async def after_agent(self, ctx: MiddlewareContext) -> MiddlewareContext:
        if ctx.chat_mode != ChatMode.SUBAGENTS:
            return ctx
        if not ctx.conversation_id or ctx.todos is None:
            return ctx
        store = _store_of(ctx)
        if store is None or not store.save_todos(ctx.conversation_id, ctx.todos):
            self._todos_by_conversation[ctx.conversation_id] = list(ctx.todos)
        logger.debug(
            "Stored %d todos for conversation %s",
            len(ctx.todos), ctx.conversation_id[:8],
        )
        return ctx

    def get_todos(self, conversation_id: str) -> list[TodoItem]:
        return list(self._todos_by_conversation.get(conversation_id, []))
