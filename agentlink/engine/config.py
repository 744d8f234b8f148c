"""Session configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTLINK_* env vars,
or layer a YAML file on top with ``load_yaml_config``. Values passed
explicitly to ``start()`` / ``send_prompt()`` always win over both.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigError
from .models import ApprovalMode

logger = logging.getLogger(__name__)


# Host decision for a gated tool use.
# Signature: async def decide(request_id, tool_name, detail) -> bool
DecisionCallback = Callable[[str, str, str], Awaitable[bool]]

# Host notification sink for session events.
# Signature: async def notify(event: SessionNotification) -> None
NotificationCallback = Callable[[Any], Awaitable[None]]

# Variables removed from the child environment: the first makes the agent
# refuse to start as a nested session, the second points it at an IDE port
# it must not share with the host.
SCRUBBED_ENV_VARS: tuple[str, ...] = ("CLAUDECODE", "CLAUDE_CODE_SSE_PORT")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_typed(name: str, default: Any, convert: Callable[[str], Any]) -> Any:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return convert(raw)
    except ValueError as exc:
        raise ConfigError("environment", f"bad value for {name}: {exc}") from exc


@dataclass
class SessionConfig:
    """Agent session configuration."""

    # Agent binary; resolved through PATH at spawn time.
    command: str = "claude"
    cwd: str = "."
    approval_mode: ApprovalMode = ApprovalMode.AUTO_EDIT
    model: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    include_partial_messages: bool = True
    verbose: bool = True

    # Grace period between SIGTERM and SIGKILL on stop().
    stop_grace_seconds: float = 5.0
    # Host-side wait for a decision before the gateway answers deny.
    approval_timeout_seconds: float = 120.0
    # Hook-side HTTP timeout; fail-closed to deny when exceeded.
    hook_timeout_seconds: float = 120.0
    detail_max_chars: int = 500

    # 0 means unbounded subscriber queues.
    event_queue_size: int = 0
    stderr_tail_lines: int = 50

    # Transcript persistence; disabled when persist_dir is None.
    persist_dir: str | None = None
    max_persisted_turns: int = 100
    max_tool_text_length: int = 500

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Load configuration from AGENTLINK_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTLINK_")
        }
        if overrides:
            logger.info(
                "SessionConfig.from_env: AGENTLINK_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("SessionConfig.from_env: no AGENTLINK_* env vars set, using defaults")

        allowed_raw = os.getenv("AGENTLINK_ALLOWED_TOOLS", "")
        config = cls(
            command=os.getenv("AGENTLINK_COMMAND", cls.command),
            cwd=os.getenv("AGENTLINK_CWD", cls.cwd),
            approval_mode=_env_typed(
                "AGENTLINK_APPROVAL_MODE", cls.approval_mode, ApprovalMode
            ),
            model=os.getenv("AGENTLINK_MODEL") or None,
            allowed_tools=[t.strip() for t in allowed_raw.split(",") if t.strip()],
            include_partial_messages=_env_bool(
                "AGENTLINK_PARTIAL_MESSAGES", cls.include_partial_messages
            ),
            verbose=_env_bool("AGENTLINK_VERBOSE", cls.verbose),
            stop_grace_seconds=_env_typed(
                "AGENTLINK_STOP_GRACE", cls.stop_grace_seconds, float
            ),
            approval_timeout_seconds=_env_typed(
                "AGENTLINK_APPROVAL_TIMEOUT", cls.approval_timeout_seconds, float
            ),
            hook_timeout_seconds=_env_typed(
                "AGENTLINK_HOOK_TIMEOUT", cls.hook_timeout_seconds, float
            ),
            detail_max_chars=_env_typed(
                "AGENTLINK_DETAIL_MAX_CHARS", cls.detail_max_chars, int
            ),
            event_queue_size=_env_typed(
                "AGENTLINK_QUEUE_SIZE", cls.event_queue_size, int
            ),
            stderr_tail_lines=_env_typed(
                "AGENTLINK_STDERR_TAIL", cls.stderr_tail_lines, int
            ),
            persist_dir=os.getenv("AGENTLINK_PERSIST_DIR") or None,
            max_persisted_turns=_env_typed(
                "AGENTLINK_MAX_PERSISTED_TURNS", cls.max_persisted_turns, int
            ),
            max_tool_text_length=_env_typed(
                "AGENTLINK_MAX_TOOL_TEXT", cls.max_tool_text_length, int
            ),
            log_level=os.getenv("AGENTLINK_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "SessionConfig.from_env: command=%s mode=%s model=%s cwd=%s",
            config.command, config.approval_mode.value,
            config.model or "(agent default)", config.cwd,
        )
        return config
