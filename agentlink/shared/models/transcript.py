"""Transcript models: turns made of text and tool-use blocks."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class TextBlock:
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ToolBlock:
    id: str
    name: str
    # Last successfully parsed input; never a half-written string.
    input: dict[str, Any] = field(default_factory=dict)
    streaming: bool = True
    result: str | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.result is not None or self.error is not None

    def set_result(self, content: str, *, is_error: bool = False) -> None:
        """Record the outcome; result and error are mutually exclusive."""
        if is_error:
            self.error = content
            self.result = None
        else:
            self.result = content
            self.error = None
        self.streaming = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_use",
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "streaming": self.streaming,
            "result": self.result,
            "error": self.error,
        }


Block = Union[TextBlock, ToolBlock]


def block_from_dict(data: dict[str, Any]) -> Block:
    if data.get("type") == "tool_use":
        tool_input = data.get("input")
        return ToolBlock(
            id=data.get("id", ""),
            name=data.get("name", ""),
            input=tool_input if isinstance(tool_input, dict) else {},
            streaming=bool(data.get("streaming", False)),
            result=data.get("result"),
            error=data.get("error"),
        )
    return TextBlock(text=data.get("text", ""))


@dataclass
class Turn:
    role: Role
    blocks: list[Block] = field(default_factory=list)
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
    # Populated from the terminal result record of an assistant turn.
    is_error: bool = False
    duration_ms: int | None = None
    cost_usd: float | None = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def has_text(self) -> bool:
        return any(isinstance(b, TextBlock) and b.text for b in self.blocks)

    def tool_blocks(self) -> list[ToolBlock]:
        return [b for b in self.blocks if isinstance(b, ToolBlock)]

    def text_blocks(self) -> list[TextBlock]:
        return [b for b in self.blocks if isinstance(b, TextBlock)]

    def find_tool(self, tool_id: str) -> ToolBlock | None:
        for block in self.blocks:
            if isinstance(block, ToolBlock) and block.id == tool_id:
                return block
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "timestamp": self.timestamp.isoformat(),
            "blocks": [b.to_dict() for b in self.blocks],
            "is_error": self.is_error,
            "duration_ms": self.duration_ms,
            "cost_usd": self.cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        timestamp = data.get("timestamp")
        return cls(
            role=Role(data.get("role", "assistant")),
            blocks=[block_from_dict(b) for b in data.get("blocks", [])],
            id=data.get("id") or _gen_id(),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else _utcnow(),
            is_error=bool(data.get("is_error", False)),
            duration_ms=data.get("duration_ms"),
            cost_usd=data.get("cost_usd"),
        )
