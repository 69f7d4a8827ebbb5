"""In-memory conversation records.

The engine reads and writes conversation titles and the subagents-mode
todo list through this store; message persistence belongs to the host
application, which can swap in its own implementation with the same
methods.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from .models import TodoItem


@dataclass(frozen=True)
class Conversation:
    id: str
    title: str | None = None
    model_profile_id: str | None = None
    todos: tuple[TodoItem, ...] = ()
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model_profile_id": self.model_profile_id,
            "todos": [
                {"id": t.id, "content": t.content, "status": t.status}
                for t in self.todos
            ],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class ConversationStore:
    """Conversation records keyed by id.

    Safe for single-event-loop usage.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    def create_conversation(
        self,
        title: str | None = None,
        model_profile_id: str | None = None,
        conversation_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=conversation_id or str(uuid.uuid4()),
            title=title,
            model_profile_id=model_profile_id,
        )
        self._conversations[conversation.id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def update_conversation(
        self, conversation_id: str, **changes: Any,
    ) -> Conversation | None:
        """Apply field changes; returns None for unknown ids."""
        current = self._conversations.get(conversation_id)
        if current is None:
            return None
        updated = replace(current, updated_at=time.time(), **changes)
        self._conversations[conversation_id] = updated
        return updated

    def list_conversations(self) -> list[Conversation]:
        return sorted(
            self._conversations.values(),
            key=lambda c: c.updated_at,
            reverse=True,
        )

    def get_todos(self, conversation_id: str) -> list[TodoItem] | None:
        """Stored todo list; None for unknown conversations."""
        current = self._conversations.get(conversation_id)
        return None if current is None else list(current.todos)

    def save_todos(self, conversation_id: str, todos: list[TodoItem]) -> bool:
        """Replace the todo list; returns False for unknown conversations."""
        return self.update_conversation(conversation_id, todos=tuple(todos)) is not None
