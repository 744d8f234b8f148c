"""Best-effort parsing of JSON documents that are still being streamed.

Tool arguments arrive as ``input_json_delta`` fragments. After each
fragment the accumulated buffer is reparsed; a truncated buffer is
repaired by closing the open string and containers, falling back to
the nearest earlier structural boundary when the tail is unusable
(a dangling key, a half-written literal or escape).
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

# How many structural boundaries to back off through before giving up.
_MAX_CUT_ATTEMPTS = 4

_CLOSERS = {"{": "}", "[": "]"}

# A \u escape cut off before its four hex digits.
_PARTIAL_UNICODE_ESCAPE = re.compile(r"(?<!\\)((?:\\\\)*)\\u[0-9a-fA-F]{0,3}$")


@dataclass
class _ScanState:
    stack: list[str] = field(default_factory=list)
    in_string: bool = False
    escape: bool = False
    string_start: int = -1
    cuts: list[int] = field(default_factory=list)


def _scan(text: str) -> _ScanState:
    state = _ScanState()
    for i, ch in enumerate(text):
        if state.in_string:
            if state.escape:
                state.escape = False
            elif ch == "\\":
                state.escape = True
            elif ch == '"':
                state.in_string = False
            continue
        if ch == '"':
            state.in_string = True
            state.string_start = i
        elif ch in _CLOSERS:
            state.stack.append(_CLOSERS[ch])
            state.cuts.append(i + 1)
        elif ch in "}]":
            if state.stack:
                state.stack.pop()
        elif ch == "," and state.stack:
            state.cuts.append(i)
    return state


def _close(text: str) -> str:
    """Terminate an open string and every open container."""
    state = _scan(text)
    if state.in_string:
        if state.escape:
            text = text[:-1]
        text = _PARTIAL_UNICODE_ESCAPE.sub(r"\1", text)
        text += '"'
    else:
        text = text.rstrip()
        while text and text[-1] in ",:":
            text = text[:-1].rstrip()
    return text + "".join(reversed(state.stack))


def _try_loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except json.JSONDecodeError:
        return False, None


def parse_partial_json(buffer: str) -> tuple[bool, Any]:
    """Parse *buffer*, repairing truncation where possible.

    Returns ``(ok, value)``; ``ok`` is False when nothing usable could
    be recovered.
    """
    text = buffer.strip()
    if not text:
        return False, None

    ok, value = _try_loads(text)
    if ok:
        return True, value

    ok, value = _try_loads(_close(text))
    if ok:
        return True, value

    state = _scan(text)
    candidates: list[int] = []
    if state.in_string and state.string_start >= 0:
        candidates.append(state.string_start)
    candidates.extend(reversed(state.cuts[-_MAX_CUT_ATTEMPTS:]))
    for cut in candidates:
        if cut <= 0:
            continue
        ok, value = _try_loads(_close(text[:cut]))
        if ok:
            return True, value
    return False, None


class PartialJsonBuffer:
    """Accumulates fragments and keeps the last good object parse."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._buffer = ""
        self.value: dict[str, Any] = dict(initial or {})

    @property
    def text(self) -> str:
        return self._buffer

    def append(self, fragment: str) -> bool:
        """Add *fragment*; return True when the parsed value changed."""
        self._buffer += fragment
        return self._reparse()

    def finish(self) -> dict[str, Any]:
        """Final parse at block end. Falls back to the last good value."""
        self._reparse()
        return self.value

    def _reparse(self) -> bool:
        complete, parsed = _try_loads(self._buffer.strip())
        if not complete:
            ok, parsed = parse_partial_json(self._buffer)
            if not ok:
                return False
        if not isinstance(parsed, dict) or parsed == self.value:
            return False
        # A repair that lost keys is worse than what is already shown.
        if not complete and not set(self.value) <= set(parsed):
            return False
        self.value = parsed
        return True
