"""Exception hierarchy for the agent session engine.

Parse-level failures are absorbed close to where they happen and degrade
to opaque text. Process- and disk-level failures surface to the host as
one of the typed exceptions below.
"""
from __future__ import annotations


class AgentLinkError(Exception):
    """Base exception for all agent session errors."""


class ConfigError(AgentLinkError):
    """A configuration document could not be interpreted."""
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")


class ProtocolError(AgentLinkError):
    """A line from the agent was not a valid protocol record."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed protocol line ({reason}): {line[:120]}")


class ProcessError(AgentLinkError):
    """Base for failures of the agent subprocess itself."""


class AgentSpawnError(ProcessError):
    """The agent subprocess could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start agent '{command}': {reason}")


class AgentNotFoundError(AgentSpawnError):
    """The agent binary does not exist or is not on PATH."""
    def __init__(self, command: str):
        super().__init__(command, "binary not found")


class AgentExitError(ProcessError):
    """The agent exited with a non-zero code the host did not ask for."""
    def __init__(self, code: int, stderr: str = ""):
        self.code = code
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"Agent exited unexpectedly (code {code}){detail}")


class NotRunningError(AgentLinkError):
    """A write was attempted with no live agent process."""
    def __init__(self, reason: str = "no agent process is running"):
        self.reason = reason
        super().__init__(f"Cannot send to agent: {reason}")


class ApprovalTimeoutError(AgentLinkError):
    """No approval decision arrived in time; the tool use is denied."""
    def __init__(self, tool_name: str, timeout_seconds: float):
        self.tool_name = tool_name
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Approval for '{tool_name}' timed out after {timeout_seconds}s"
        )


class RevertError(AgentLinkError):
    """Writing a file's original content back to disk failed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to revert {path}: {reason}")
