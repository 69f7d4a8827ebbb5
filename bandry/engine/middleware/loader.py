"""Standard middleware stack for the tool-planning agent.

Registration order:
    1. workspace           allocate task_{id}/{input,staging,output}
    2. sandbox_binding     bind the shared sandbox to that workspace
    3. dangling_tool_call  drop nameless tool calls
    4. summarization       compress long prompts
    5. title               name untitled conversations
    6. memory              memory queue placeholder
    7. todolist            task list (active in subagents mode)
    8. subagent_limit      cap delegated sub-tasks
    9. hitl                risk-gated approval (when enabled)
   10. clarification       terminal tool interceptor, always last
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..models import ChatMode
from ..sandbox import SandboxService
from ..yaml_config import AppConfig
from .base import Middleware
from .clarification import ClarificationMiddleware
from .dangling_tool_call import DanglingToolCallMiddleware
from .hitl import HITLMiddleware
from .memory import NoopMemoryMiddleware
from .pipeline import MiddlewarePipeline
from .sandbox_binding import SandboxBindingMiddleware
from .subagent_limit import SubagentLimitMiddleware
from .summarization import SummarizationMiddleware
from .title import TitleMiddleware
from .todolist import TodoListMiddleware
from .workspace import WorkspaceMiddleware

logger = logging.getLogger(__name__)


@dataclass
class MiddlewareLoaderOptions:
    config: AppConfig
    sandbox: SandboxService
    mode: ChatMode = ChatMode.DEFAULT
    # Shared instances keep their state across requests.
    todo_list: TodoListMiddleware | None = None
    hitl: HITLMiddleware | None = None


def build_middlewares(options: MiddlewareLoaderOptions) -> list[Middleware]:
    """Return the ordered stack, terminal interceptor last."""
    engine = options.config.engine
    middlewares: list[Middleware] = [
        WorkspaceMiddleware(engine.workspaces_dir),
        SandboxBindingMiddleware(options.sandbox),
        DanglingToolCallMiddleware(),
        SummarizationMiddleware(
            message_threshold=engine.summarization_message_threshold,
            char_threshold=engine.summarization_char_threshold,
            keep_recent=engine.summarization_keep_recent,
        ),
        TitleMiddleware(),
        NoopMemoryMiddleware(),
        options.todo_list or TodoListMiddleware(),
        SubagentLimitMiddleware(engine.max_subagents),
    ]
    if options.hitl is not None:
        middlewares.append(options.hitl)
    middlewares.append(ClarificationMiddleware())
    return middlewares


def create_middleware_pipeline(options: MiddlewareLoaderOptions) -> MiddlewarePipeline:
    pipeline = MiddlewarePipeline.from_sequence(build_middlewares(options))
    logger.debug(
        "Middleware pipeline mode=%s: %s",
        options.mode.value, " -> ".join(pipeline.names),
    )
    return pipeline
