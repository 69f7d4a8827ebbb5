"""Core data models for the chat orchestration engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from .conversation_store import ConversationStore
    from .config import UpdateCallback
    from .providers.base import ModelsFactory
    from .sandbox import SandboxService
    from .yaml_config import AppConfig


# Cooperative cancellation flag threaded through one send() call.
AbortSignal = asyncio.Event


class ChatMode(str, Enum):
    """Planner behavior profile selected by the caller."""
    DEFAULT = "default"
    THINKING = "thinking"
    SUBAGENTS = "subagents"


class UpdateStage(str, Enum):
    """Stages reported through the on_update progress callback."""
    PLANNING = "planning"
    MODEL = "model"
    TOOL = "tool"
    CLARIFICATION = "clarification"
    FINAL = "final"
    ERROR = "error"


class ContextState(str, Enum):
    """Phase tag carried by MiddlewareContext."""
    BEFORE_AGENT = "before_agent"
    BEFORE_MODEL = "before_model"
    AFTER_MODEL = "after_model"
    AFTER_AGENT = "after_agent"
    # Legacy four-phase vocabulary
    REQUEST = "request"
    BEFORE_LLM = "before_llm"
    AFTER_LLM = "after_llm"
    RESPONSE = "response"


class RiskLevel(str, Enum):
    """Risk classification for pending tool calls."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK: dict[RiskLevel, int] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
}


def _make_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class LlmMessage:
    """One role/content entry of a model prompt."""
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ToolCall:
    """A tool call as exposed to afterModel policies."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LlmResponse:
    """Raw model output plus any tool calls derived from it."""
    content: str
    tool_calls: list[ToolCall] | None = None


@dataclass(frozen=True)
class ToolSpec:
    """Tool definition advertised to the planner."""
    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None


@dataclass(frozen=True)
class PlannerAnswer:
    """Planner decided to answer directly."""
    answer: str
    action: str = "answer"


@dataclass(frozen=True)
class PlannerToolAction:
    """Planner decided to call a tool."""
    tool: str
    input: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    action: str = "tool"

    @property
    def signature(self) -> str:
        """Stable identity of this call, used by the repeat-call guard."""
        return f"{self.tool}:{json.dumps(self.input, sort_keys=True, ensure_ascii=False)}"


PlannerAction = Union[PlannerAnswer, PlannerToolAction]


@dataclass(frozen=True)
class ToolObservation:
    """Result of one tool execution. Failure is data, not an exception."""
    tool: str
    input: dict[str, Any]
    ok: bool
    output: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "input": self.input,
            "ok": self.ok,
            "output": self.output,
        }


@dataclass(frozen=True)
class ClarificationOption:
    """One candidate reply offered alongside a clarification question."""
    label: str
    value: str
    recommended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "value": self.value,
            "recommended": self.recommended,
        }


@dataclass(frozen=True)
class TodoItem:
    """Entry of the per-conversation task list (subagents mode)."""
    id: str
    content: str
    status: str = "pending"


@dataclass(frozen=True)
class RiskAssessment:
    """Outcome of classifying pending tool calls."""
    level: RiskLevel
    reason: str = ""
    operations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class HITLApprovalRequest:
    """Approval request emitted for medium/high risk tool calls."""
    task_id: str
    operation: str
    risk: RiskLevel
    details: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)

    def to_event(self) -> dict[str, Any]:
        return {
            "event": "approval-required",
            "task_id": self.task_id,
            "operation": self.operation,
            "risk": self.risk.value,
            "details": self.details,
            "tool_calls": self.tool_calls,
        }


@dataclass(frozen=True)
class HITLApprovalResponse:
    """Decision submitted for a pending approval, correlated by task_id."""
    task_id: str
    approved: bool
    reason: str | None = None


@dataclass(frozen=True)
class RuntimeHandle:
    """Collaborators shared by every middleware of one request."""
    config: AppConfig
    models_factory: ModelsFactory
    sandbox: SandboxService | None = None
    conversation_store: ConversationStore | None = None
    on_update: UpdateCallback | None = None
    abort_signal: AbortSignal | None = None


@dataclass(frozen=True)
class MiddlewareContext:
    """State threaded through one request.

    Never mutated in place: hooks return a new context built with
    evolve() / with_metadata().
    """
    session_id: str = field(default_factory=_make_id)
    task_id: str = field(default_factory=_make_id)
    workspace_path: str = ""
    messages: list[LlmMessage] = field(default_factory=list)
    tools: list[ToolSpec] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    state: ContextState = ContextState.BEFORE_AGENT
    conversation_id: str | None = None
    llm_response: LlmResponse | None = None
    final_response: str | None = None
    chat_mode: ChatMode = ChatMode.DEFAULT
    todos: list[TodoItem] | None = None
    runtime: RuntimeHandle | None = None

    def evolve(self, **changes: Any) -> MiddlewareContext:
        return replace(self, **changes)

    def with_metadata(self, **updates: Any) -> MiddlewareContext:
        return replace(self, metadata={**self.metadata, **updates})

    def add_middleware_latency(self, latency_ms: int) -> MiddlewareContext:
        """Count a model call made by a middleware toward the request latency."""
        spent = self.metadata.get("middleware_latency_ms", 0)
        return self.with_metadata(middleware_latency_ms=spent + latency_ms)


@dataclass
class ChatSendInput:
    """One user turn submitted to the agent."""
    message: str
    history: list[dict[str, Any]] = field(default_factory=list)
    mode: ChatMode = ChatMode.DEFAULT
    conversation_id: str | None = None
    request_id: str | None = None


@dataclass
class ChatSendResult:
    """Final reply of one send() call."""
    reply: str
    provider: str
    model: str
    latency_ms: int
    workspace_path: str | None = None
