"""Enums and small value types shared across the engine.

Kept dependency-free so config, process and adapters can all import
from here without cycles.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PermissionMode(str, Enum):
    """Values accepted by the agent's --permission-mode flag."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


class ApprovalMode(str, Enum):
    """How the host wants tool use supervised."""
    ASK_FIRST = "askFirst"
    AUTO_EDIT = "autoEdit"
    PLAN_FIRST = "planFirst"


class ProcessState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERRORED = "errored"


@dataclass(frozen=True)
class LaunchPlan:
    """Permission mode plus whether the approval hook must be installed."""
    permission_mode: PermissionMode
    needs_hook: bool


_LAUNCH_PLANS: dict[ApprovalMode, LaunchPlan] = {
    # The hook performs the gating, so the agent's own prompts are bypassed.
    ApprovalMode.ASK_FIRST: LaunchPlan(PermissionMode.BYPASS, True),
    ApprovalMode.AUTO_EDIT: LaunchPlan(PermissionMode.BYPASS, False),
    ApprovalMode.PLAN_FIRST: LaunchPlan(PermissionMode.PLAN, False),
}


def launch_plan_for(mode: ApprovalMode | str) -> LaunchPlan:
    """Map an approval mode to the flags the agent is launched with."""
    return _LAUNCH_PLANS[ApprovalMode(mode)]


# Tools the approval hook allows without asking (read-only operations).
SAFE_TOOLS: frozenset[str] = frozenset({
    "Read",
    "Glob",
    "Grep",
    "LS",
    "Task",
    "TodoRead",
    "TodoWrite",
})

# Tools passed to --allowedTools on every launch. AskUserQuestion only asks
# the host a question, so it is never gated either.
ALWAYS_ALLOWED_TOOLS: tuple[str, ...] = ("AskUserQuestion",)

# Tools whose execution rewrites a file on disk.
FILE_MUTATING_TOOLS: frozenset[str] = frozenset({
    "Write",
    "Edit",
    "MultiEdit",
    "NotebookEdit",
})
