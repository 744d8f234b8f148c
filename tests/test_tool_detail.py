from __future__ import annotations

import json

from agentlink.shared.formatters.tool_detail import format_detail, parse_tool_input


def test_write_detail_shows_path_and_clipped_preview() -> None:
    detail = format_detail("Write", {"file_path": "src/app.py", "content": "x" * 400})
    assert detail.startswith("File: src/app.py\n\nContent preview:\n")
    assert detail.endswith("x" * 300 + "...")


def test_edit_detail_shows_old_and_new_excerpts() -> None:
    detail = format_detail("Edit", json.dumps({
        "file_path": "a.py", "old_string": "foo()", "new_string": "bar()",
    }))
    assert detail == "File: a.py\n\nReplace:\nfoo()\n\nWith:\nbar()"


def test_multi_edit_detail_counts_edits() -> None:
    detail = format_detail("MultiEdit", {
        "file_path": "a.py",
        "edits": [{"old_string": "a", "new_string": "b"}, {"old_string": "c", "new_string": "d"}],
    })
    assert "2 edit(s)" in detail
    assert "Replace:\na" in detail


def test_bash_detail_is_the_command() -> None:
    assert format_detail("Bash", {"command": "rm -rf build"}) == "Command: rm -rf build"


def test_notebook_detail() -> None:
    assert format_detail("NotebookEdit", {"notebook_path": "nb.ipynb"}) == "Notebook: nb.ipynb"


def test_alias_uses_canonical_formatter() -> None:
    assert format_detail("mcp__fs__write_file", {"file_path": "x.txt", "content": "hi"}).startswith(
        "File: x.txt"
    )


def test_unknown_tool_falls_back_to_indented_json() -> None:
    detail = format_detail("WebSearch", {"query": "python asyncio"})
    assert detail == json.dumps({"query": "python asyncio"}, indent=2)


def test_detail_is_clipped_to_budget() -> None:
    detail = format_detail("Bash", {"command": "echo " + "y" * 1000}, max_chars=120)
    assert len(detail) == 120


def test_unparsable_input_is_clipped_raw_text() -> None:
    raw = "not json: " + "z" * 600
    assert format_detail("Bash", raw) == raw[:500]


def test_parse_tool_input_variants() -> None:
    assert parse_tool_input(None) == {}
    assert parse_tool_input({"a": 1}) == {"a": 1}
    assert parse_tool_input('{"a": 1}') == {"a": 1}
    assert parse_tool_input("{'a': 1}") == {"a": 1}
    assert parse_tool_input("[1, 2]") is None
