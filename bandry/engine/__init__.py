"""Bandry engine: tool-planning chat orchestration with a middleware pipeline."""
from .models import (
    ChatMode,
    ChatSendInput,
    ChatSendResult,
    ClarificationOption,
    HITLApprovalRequest,
    HITLApprovalResponse,
    MiddlewareContext,
    PlannerAnswer,
    PlannerToolAction,
    RiskLevel,
    ToolObservation,
    UpdateStage,
)
from .config import EngineConfig
from .errors import (
    CancellationError,
    DelegationValidationError,
    EmptyMessageError,
    MiddlewareError,
    MiddlewareOrderError,
    ModelCallError,
    OrchestrationError,
    RoutingError,
    SandboxError,
)

__all__ = [
    # Agent (lazy import)
    "ToolPlanningChatAgent",
    # Models
    "ChatMode",
    "ChatSendInput",
    "ChatSendResult",
    "ClarificationOption",
    "HITLApprovalRequest",
    "HITLApprovalResponse",
    "MiddlewareContext",
    "PlannerAnswer",
    "PlannerToolAction",
    "RiskLevel",
    "ToolObservation",
    "UpdateStage",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "AppConfig",
    "load_app_config",
    # Collaborators (lazy import)
    "ConversationStore",
    "ModelsFactory",
    "RateLimitedModelsFactory",
    "SandboxService",
    "MiddlewarePipeline",
    # Errors
    "CancellationError",
    "DelegationValidationError",
    "EmptyMessageError",
    "MiddlewareError",
    "MiddlewareOrderError",
    "ModelCallError",
    "OrchestrationError",
    "RoutingError",
    "SandboxError",
]


def __getattr__(name: str):
    if name == "ToolPlanningChatAgent":
        from .planner_agent import ToolPlanningChatAgent
        return ToolPlanningChatAgent
    if name == "AppConfig":
        from .yaml_config import AppConfig
        return AppConfig
    if name == "load_app_config":
        from .yaml_config import load_app_config
        return load_app_config
    if name == "ConversationStore":
        from .conversation_store import ConversationStore
        return ConversationStore
    if name == "ModelsFactory":
        from .providers.base import ModelsFactory
        return ModelsFactory
    if name == "RateLimitedModelsFactory":
        from .providers.rate_limiter import RateLimitedModelsFactory
        return RateLimitedModelsFactory
    if name == "SandboxService":
        from .sandbox import SandboxService
        return SandboxService
    if name == "MiddlewarePipeline":
        from .middleware.pipeline import MiddlewarePipeline
        return MiddlewarePipeline
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
