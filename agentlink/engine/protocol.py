"""Typed messages for the agent's stream-json protocol.

Every stdout line is decoded once, here, into one of a closed set of
dataclasses. Downstream code matches on the class instead of probing
optional keys of a raw dict.

Agent -> host (one JSON object per line, discriminated by ``type``):
    system        {"subtype": "init", "session_id", "model", "tools"}
    assistant     {"message": {"id", "content": [text | tool_use]}}
    user          {"message": {"content": [tool_result]}}
    stream_event  {"event": {"type": message_start | content_block_* | ...}}
    result        {"result", "is_error", "duration_ms", "total_cost_usd"}

Host -> agent:
    {"type": "user", "session_id", "message": {"role": "user", "content"}}
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


# ── Content blocks ──


@dataclass
class TextContent:
    text: str = ""


@dataclass
class ToolUseContent:
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultContent:
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


ContentBlock = Union[TextContent, ToolUseContent, ToolResultContent]


# ── Stream events (token level) ──


@dataclass
class TextDelta:
    text: str = ""


@dataclass
class InputJsonDelta:
    partial_json: str = ""


@dataclass
class MessageStart:
    message_id: str | None = None


@dataclass
class ContentBlockStart:
    index: int = 0
    block: TextContent | ToolUseContent | None = None


@dataclass
class ContentBlockDelta:
    index: int = 0
    delta: TextDelta | InputJsonDelta | None = None


@dataclass
class ContentBlockStop:
    index: int = 0


@dataclass
class MessageDelta:
    stop_reason: str | None = None


@dataclass
class MessageStop:
    pass


StreamEvent = Union[
    MessageStart,
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageDelta,
    MessageStop,
]


# ── Top-level messages ──


@dataclass
class SystemMessage:
    subtype: str = ""
    session_id: str | None = None
    model: str | None = None
    tools: list[str] = field(default_factory=list)


@dataclass
class AssistantMessage:
    message_id: str | None = None
    content: list[ContentBlock] = field(default_factory=list)
    parent_tool_use_id: str | None = None


@dataclass
class UserMessage:
    content: list[ContentBlock] = field(default_factory=list)
    parent_tool_use_id: str | None = None


@dataclass
class StreamEventMessage:
    event: StreamEvent | None = None
    parent_tool_use_id: str | None = None


@dataclass
class ResultMessage:
    result: str = ""
    is_error: bool = False
    duration_ms: int | None = None
    total_cost_usd: float | None = None
    errors: list[str] = field(default_factory=list)
    subtype: str = ""
    session_id: str | None = None


ProtocolMessage = Union[
    SystemMessage,
    AssistantMessage,
    UserMessage,
    StreamEventMessage,
    ResultMessage,
]


def _obj(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _tool_result_text(content: Any) -> str:
    """Flatten tool_result content (string or list of text parts)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    return json.dumps(content)


def _decode_block(raw: Any) -> ContentBlock | None:
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == "text":
        return TextContent(text=str(raw.get("text") or ""))
    if kind == "tool_use":
        tool_input = raw.get("input")
        return ToolUseContent(
            id=str(raw.get("id") or ""),
            name=str(raw.get("name") or ""),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if kind == "tool_result":
        return ToolResultContent(
            tool_use_id=str(raw.get("tool_use_id") or ""),
            content=_tool_result_text(raw.get("content")),
            is_error=bool(raw.get("is_error", False)),
        )
    # thinking, image, server_tool_use ... are not rendered
    return None


def _decode_content(raw: Any) -> list[ContentBlock]:
    if isinstance(raw, str):
        return [TextContent(text=raw)]
    if not isinstance(raw, list):
        return []
    blocks = []
    for item in raw:
        block = _decode_block(item)
        if block is not None:
            blocks.append(block)
    return blocks


def _decode_stream_event(raw: Any) -> StreamEvent | None:
    if not isinstance(raw, dict):
        return None
    kind = raw.get("type")
    if kind == "message_start":
        return MessageStart(message_id=_obj(raw.get("message")).get("id"))
    if kind == "content_block_start":
        block = _decode_block(raw.get("content_block"))
        if isinstance(block, ToolResultContent):
            block = None
        return ContentBlockStart(index=_as_int(raw.get("index")), block=block)
    if kind == "content_block_delta":
        delta_raw = _obj(raw.get("delta"))
        delta: TextDelta | InputJsonDelta | None = None
        if delta_raw.get("type") == "text_delta":
            delta = TextDelta(text=str(delta_raw.get("text") or ""))
        elif delta_raw.get("type") == "input_json_delta":
            delta = InputJsonDelta(partial_json=str(delta_raw.get("partial_json") or ""))
        return ContentBlockDelta(index=_as_int(raw.get("index")), delta=delta)
    if kind == "content_block_stop":
        return ContentBlockStop(index=_as_int(raw.get("index")))
    if kind == "message_delta":
        delta_raw = _obj(raw.get("delta"))
        return MessageDelta(stop_reason=delta_raw.get("stop_reason"))
    if kind == "message_stop":
        return MessageStop()
    return None


def decode_message(line: str) -> ProtocolMessage | None:
    """Decode one NDJSON line.

    Returns None for well-formed records of a kind this module does not
    know (forward compatible). Raises ProtocolError when the line is not
    a JSON object.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(line, f"invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(line, "record is not an object")

    kind = data.get("type")
    parent = data.get("parent_tool_use_id")

    if kind == "system":
        tools = data.get("tools") or []
        return SystemMessage(
            subtype=str(data.get("subtype") or ""),
            session_id=data.get("session_id"),
            model=data.get("model"),
            tools=[str(t) for t in tools] if isinstance(tools, list) else [],
        )
    if kind == "assistant":
        message = _obj(data.get("message"))
        return AssistantMessage(
            message_id=message.get("id"),
            content=_decode_content(message.get("content")),
            parent_tool_use_id=parent,
        )
    if kind == "user":
        message = _obj(data.get("message"))
        return UserMessage(
            content=_decode_content(message.get("content")),
            parent_tool_use_id=parent,
        )
    if kind == "stream_event":
        return StreamEventMessage(
            event=_decode_stream_event(data.get("event")),
            parent_tool_use_id=parent,
        )
    if kind == "result":
        errors = data.get("errors") or []
        duration = data.get("duration_ms")
        cost = data.get("total_cost_usd")
        return ResultMessage(
            result=str(data.get("result") or ""),
            is_error=bool(data.get("is_error", False)),
            duration_ms=_as_int(duration) if duration is not None else None,
            total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
            errors=[str(e) for e in errors] if isinstance(errors, list) else [],
            subtype=str(data.get("subtype") or ""),
            session_id=data.get("session_id"),
        )

    logger.debug("Ignoring unknown protocol message type: %r", kind)
    return None


def encode_user_message(text: str, session_id: str = DEFAULT_SESSION_ID) -> str:
    """Serialize a user prompt as one newline-terminated record."""
    record = {
        "type": "user",
        "session_id": session_id,
        "message": {"role": "user", "content": text},
        "parent_tool_use_id": None,
    }
    return json.dumps(record) + "\n"


def encode_tool_result(
    tool_use_id: str,
    content: str,
    session_id: str = DEFAULT_SESSION_ID,
    *,
    is_error: bool = False,
) -> str:
    """Serialize a host-supplied answer to an interactive tool."""
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
    }
    if is_error:
        block["is_error"] = True
    record = {
        "type": "user",
        "session_id": session_id,
        "message": {"role": "user", "content": [block]},
        "parent_tool_use_id": None,
    }
    return json.dumps(record) + "\n"
