"""Agent engine: process supervision and the stream-json protocol."""
from .models import (
    ALWAYS_ALLOWED_TOOLS,
    FILE_MUTATING_TOOLS,
    SAFE_TOOLS,
    ApprovalMode,
    LaunchPlan,
    PermissionMode,
    ProcessState,
    launch_plan_for,
)
from .config import SessionConfig
from .errors import (
    AgentExitError,
    AgentLinkError,
    AgentNotFoundError,
    AgentSpawnError,
    ApprovalTimeoutError,
    ConfigError,
    NotRunningError,
    ProcessError,
    ProtocolError,
    RevertError,
)

__all__ = [
    "ALWAYS_ALLOWED_TOOLS",
    "FILE_MUTATING_TOOLS",
    "SAFE_TOOLS",
    "ApprovalMode",
    "LaunchPlan",
    "PermissionMode",
    "ProcessState",
    "launch_plan_for",
    "SessionConfig",
    "AgentExitError",
    "AgentLinkError",
    "AgentNotFoundError",
    "AgentSpawnError",
    "ApprovalTimeoutError",
    "ConfigError",
    "NotRunningError",
    "ProcessError",
    "ProtocolError",
    "RevertError",
]
