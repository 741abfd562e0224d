"""LocalDesk engine - streaming tool-call agent runner and multi-thread coordinator."""
from .models import (
    MultiThreadTask,
    PermissionMode,
    RoleConfig,
    RunResult,
    RunState,
    Session,
    SessionStatus,
    TaskMode,
    TaskOutcome,
    TaskRequest,
    TaskStatus,
    ThreadSpec,
    TokenUsage,
    ToolResult,
)
from .config import EngineConfig
from .loop_detector import LoopDetector, LoopVerdict
from .permission_gate import PermissionGate
from .ports import ModelClient, SessionStore, ToolExecutor
from .errors import (
    ConfigurationError,
    EngineError,
    LoopNotResolvedError,
    MaxIterationsError,
    ModelClientError,
    TaskConfigurationError,
    TaskNotFoundError,
)

__all__ = [
    # Runner and coordinator (lazy import)
    "AgentRunner",
    "MultiThreadCoordinator",
    "majority_error_policy",
    # Models
    "MultiThreadTask",
    "PermissionMode",
    "RoleConfig",
    "RunResult",
    "RunState",
    "Session",
    "SessionStatus",
    "TaskMode",
    "TaskOutcome",
    "TaskRequest",
    "TaskStatus",
    "ThreadSpec",
    "TokenUsage",
    "ToolResult",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "LocaldeskConfig",
    "load_yaml_config",
    # Building blocks
    "LoopDetector",
    "LoopVerdict",
    "PermissionGate",
    # Ports and adapters
    "ModelClient",
    "SessionStore",
    "ToolExecutor",
    "OpenAICompatibleClient",
    "LocalToolExecutor",
    "InMemorySessionStore",
    "JsonSessionStore",
    # Errors
    "ConfigurationError",
    "EngineError",
    "LoopNotResolvedError",
    "MaxIterationsError",
    "ModelClientError",
    "TaskConfigurationError",
    "TaskNotFoundError",
]


def __getattr__(name: str):
    if name == "AgentRunner":
        from .runner import AgentRunner
        return AgentRunner
    if name in ("MultiThreadCoordinator", "majority_error_policy"):
        from . import coordinator
        return getattr(coordinator, name)
    if name in ("LocaldeskConfig", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    if name == "OpenAICompatibleClient":
        from .providers.openai_compat import OpenAICompatibleClient
        return OpenAICompatibleClient
    if name == "LocalToolExecutor":
        from .tools.executor import LocalToolExecutor
        return LocalToolExecutor
    if name in ("InMemorySessionStore", "JsonSessionStore"):
        from . import session_store
        return getattr(session_store, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
