"""Event types published to hosts.

Two families live here. Supervisor events (``RawOutput``,
``ProcessFailed``, ``ProcessExited``) travel on a process's event feed
next to the decoded protocol messages. Session notifications are what
``AgentSession`` hands to the host UI layer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from agentlink.engine.protocol import ProtocolMessage


@dataclass
class AgentEvent:
    """Base event."""
    event_type: str = ""


# ── Supervisor feed ──


@dataclass
class RawOutput(AgentEvent):
    """A stdout line that was not a protocol record."""
    event_type: str = "raw_output"
    text: str = ""


@dataclass
class ProcessFailed(AgentEvent):
    """Terminal: spawn failure or unexpected exit."""
    event_type: str = "process_failed"
    error: Exception | None = None


@dataclass
class ProcessExited(AgentEvent):
    """Terminal: the process ended cleanly or was stopped."""
    event_type: str = "process_exited"
    code: int | None = None


SupervisorEvent = Union[ProtocolMessage, RawOutput, ProcessFailed, ProcessExited]


def is_terminal(event: Any) -> bool:
    return isinstance(event, (ProcessFailed, ProcessExited))


# ── Session notifications ──


@dataclass
class SessionStarted(AgentEvent):
    event_type: str = "session_started"
    session_id: str = ""
    model: str | None = None
    tools: list[str] = field(default_factory=list)


@dataclass
class TranscriptUpdated(AgentEvent):
    event_type: str = "transcript_updated"
    turn_count: int = 0


@dataclass
class TurnFinished(AgentEvent):
    event_type: str = "turn_finished"
    is_error: bool = False
    duration_ms: int | None = None
    cost_usd: float | None = None


@dataclass
class ApprovalRequested(AgentEvent):
    event_type: str = "approval_requested"
    request_id: str = ""
    tool_name: str = ""
    detail: str = ""


@dataclass
class ApprovalResolved(AgentEvent):
    event_type: str = "approval_resolved"
    request_id: str = ""
    approved: bool = False


@dataclass
class FileChangesUpdated(AgentEvent):
    event_type: str = "file_changes_updated"
    paths: list[str] = field(default_factory=list)


@dataclass
class SessionErrored(AgentEvent):
    event_type: str = "session_errored"
    message: str = ""
    error_type: str = ""


@dataclass
class SessionEnded(AgentEvent):
    event_type: str = "session_ended"
    code: int | None = None


_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "raw_output": RawOutput,
    "process_exited": ProcessExited,
    "session_started": SessionStarted,
    "transcript_updated": TranscriptUpdated,
    "turn_finished": TurnFinished,
    "approval_requested": ApprovalRequested,
    "approval_resolved": ApprovalResolved,
    "file_changes_updated": FileChangesUpdated,
    "session_errored": SessionErrored,
    "session_ended": SessionEnded,
}


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None:
            continue
        if isinstance(val, BaseException):
            val = str(val)
        d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert a serialized event dict back into its dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
