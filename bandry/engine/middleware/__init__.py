"""Middleware pipeline and policy units for the planner loop."""
from .base import Middleware, Phase, TerminalToolInterceptor, ToolCallHandler
from .clarification import ClarificationMiddleware
from .dangling_tool_call import DanglingToolCallMiddleware
from .hitl import HITLMiddleware, assess_risk
from .loader import MiddlewareLoaderOptions, build_middlewares, create_middleware_pipeline
from .memory import NoopMemoryMiddleware
from .pipeline import MiddlewarePipeline
from .sandbox_binding import SandboxBindingMiddleware
from .subagent_limit import SubagentLimitMiddleware
from .summarization import SummarizationMiddleware
from .title import TitleMiddleware
from .todolist import TodoListMiddleware
from .workspace import WorkspaceMiddleware

__all__ = [
    "ClarificationMiddleware",
    "DanglingToolCallMiddleware",
    "HITLMiddleware",
    "Middleware",
    "MiddlewareLoaderOptions",
    "MiddlewarePipeline",
    "NoopMemoryMiddleware",
    "Phase",
    "SandboxBindingMiddleware",
    "SubagentLimitMiddleware",
    "SummarizationMiddleware",
    "TerminalToolInterceptor",
    "TitleMiddleware",
    "TodoListMiddleware",
    "ToolCallHandler",
    "WorkspaceMiddleware",
    "assess_risk",
    "build_middlewares",
    "create_middleware_pipeline",
]
