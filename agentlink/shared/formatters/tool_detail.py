"""Human-readable approval details per tool type.

The permission gateway shows the host a short description of what a
tool is about to do. Each tool kind gets its own rendering; anything
unregistered falls back to indented JSON. Every detail is clipped to a
character budget so UI payloads stay bounded.

Adding a new tool format requires only a single decorated function:

    @detail_formatter("MyTool")
    def _detail_my_tool(args):
        return f"Target: {args.get('target', '')}"
"""

from __future__ import annotations

import ast
import json
from typing import Any, Callable

from agentlink.adapters.file_tracker import normalize_tool_name

DEFAULT_DETAIL_CHARS = 500
_PREVIEW_CHARS = 300
_EXCERPT_CHARS = 150

_FORMATTERS: dict[str, Callable[[dict[str, Any]], str]] = {}


def detail_formatter(name: str):
    """Decorator to register a detail formatter for a tool name."""

    def decorator(fn: Callable[[dict[str, Any]], str]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def parse_tool_input(tool_input: str | dict | None) -> dict | None:
    """Parse tool input to a dict, or None when it is not an object.

    Accepts a dict, a JSON string, or a Python repr of a dict.
    """
    if tool_input is None:
        return {}
    if isinstance(tool_input, dict):
        return tool_input
    if not isinstance(tool_input, str):
        return None
    try:
        parsed = json.loads(tool_input)
    except (json.JSONDecodeError, TypeError):
        try:
            parsed = ast.literal_eval(tool_input)
        except (ValueError, SyntaxError):
            return None
    return parsed if isinstance(parsed, dict) else None


def _clip(text: str, length: int) -> str:
    if length <= 0 or len(text) <= length:
        return text
    return text[:length]


def format_detail(
    tool_name: str,
    tool_input: str | dict | None,
    max_chars: int = DEFAULT_DETAIL_CHARS,
) -> str:
    """Render *tool_input* for an approval prompt."""
    args = parse_tool_input(tool_input)
    if args is None:
        raw = tool_input if isinstance(tool_input, str) else str(tool_input)
        return _clip(raw, max_chars)
    formatter = _FORMATTERS.get(tool_name) or _FORMATTERS.get(normalize_tool_name(tool_name))
    if formatter is None:
        return _clip(json.dumps(args, indent=2, default=str), max_chars)
    return _clip(formatter(args), max_chars)


# ── Per-tool formatters ──


@detail_formatter("Write")
def _detail_write(args: dict[str, Any]) -> str:
    content = str(args.get("content") or "")
    preview = content[:_PREVIEW_CHARS]
    ellipsis = "..." if len(content) > _PREVIEW_CHARS else ""
    return f"File: {args.get('file_path', '')}\n\nContent preview:\n{preview}{ellipsis}"


@detail_formatter("Edit")
def _detail_edit(args: dict[str, Any]) -> str:
    old = str(args.get("old_string") or "")[:_EXCERPT_CHARS]
    new = str(args.get("new_string") or "")[:_EXCERPT_CHARS]
    return f"File: {args.get('file_path', '')}\n\nReplace:\n{old}\n\nWith:\n{new}"


@detail_formatter("MultiEdit")
def _detail_multi_edit(args: dict[str, Any]) -> str:
    edits = args.get("edits") or []
    lines = [f"File: {args.get('file_path', '')}", "", f"{len(edits)} edit(s)"]
    if edits and isinstance(edits[0], dict):
        first = edits[0]
        lines += [
            "",
            "Replace:",
            str(first.get("old_string") or "")[:_EXCERPT_CHARS],
            "",
            "With:",
            str(first.get("new_string") or "")[:_EXCERPT_CHARS],
        ]
    return "\n".join(lines)


@detail_formatter("Bash")
def _detail_bash(args: dict[str, Any]) -> str:
    return f"Command: {args.get('command', '')}"


@detail_formatter("NotebookEdit")
def _detail_notebook_edit(args: dict[str, Any]) -> str:
    return f"Notebook: {args.get('notebook_path', '')}"


@detail_formatter("WebFetch")
def _detail_web_fetch(args: dict[str, Any]) -> str:
    return f"URL: {args.get('url', '')}"
