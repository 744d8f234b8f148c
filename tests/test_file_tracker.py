from __future__ import annotations

from unittest.mock import patch

import pytest

from agentlink.adapters.file_tracker import (
    FileChangeTracker,
    LineRange,
    compute_line_diff,
    is_file_tool,
    normalize_tool_name,
    target_path,
)
from agentlink.engine.errors import RevertError


def test_normalize_tool_name_aliases() -> None:
    assert normalize_tool_name("write_file") == "Write"
    assert normalize_tool_name("edit_file") == "Edit"
    assert normalize_tool_name("mcp__workspace__edit_file") == "Edit"
    assert normalize_tool_name("MultiEdit") == "MultiEdit"
    assert normalize_tool_name("Bash") == "Bash"


def test_is_file_tool() -> None:
    assert is_file_tool("Write")
    assert is_file_tool("NotebookEdit")
    assert is_file_tool("create_file")
    assert not is_file_tool("Read")
    assert not is_file_tool("Bash")


def test_target_path_lookup_order() -> None:
    assert target_path({"file_path": "a.py", "path": "b.py"}) == "a.py"
    assert target_path({"notebook_path": "n.ipynb"}) == "n.ipynb"
    assert target_path({"path": " c.py "}) == "c.py"
    assert target_path({"command": "ls"}) == ""


def test_diff_of_empty_before_is_all_added() -> None:
    added, modified = compute_line_diff([], ["a", "b", "c"])
    assert added == {LineRange(0, 2)}
    assert modified == set()


def test_diff_single_line_replacement() -> None:
    added, modified = compute_line_diff(["a", "b", "c"], ["a", "B", "c"])
    assert added == set()
    assert modified == {LineRange(1, 1)}


def test_diff_insertion_in_middle() -> None:
    added, modified = compute_line_diff(["a", "c"], ["a", "b1", "b2", "c"])
    assert modified == set()
    assert added == {LineRange(1, 1), LineRange(2, 2)}


def test_diff_replacement_with_growth() -> None:
    added, modified = compute_line_diff(["a", "x", "z"], ["a", "y1", "y2", "z"])
    assert modified == {LineRange(1, 1)}
    assert added == {LineRange(2, 2)}


def test_diff_pure_deletion_has_no_ranges() -> None:
    assert compute_line_diff(["a", "b", "c"], ["a", "c"]) == (set(), set())


def test_new_file_lines_are_all_added(tmp_path) -> None:
    tracker = FileChangeTracker(base_dir=tmp_path)
    tracker.snapshot_file("t1", "new.txt")
    (tmp_path / "new.txt").write_text("one\ntwo\nthree\n", encoding="utf-8")

    tracked = tracker.on_result("t1")

    assert tracked is not None
    assert tracked.original_content == ""
    assert sum(r.line_count for r in tracked.added_ranges) == 3
    assert tracked.modified_ranges == set()


def test_relative_path_resolves_against_base_dir(tmp_path) -> None:
    tracker = FileChangeTracker(base_dir=tmp_path)
    resolved = tracker.snapshot_file("t1", "sub/file.txt")
    assert resolved == str(tmp_path.resolve() / "sub" / "file.txt")
    assert tracker.is_pending("t1")


def test_on_result_twice_does_not_duplicate_ranges(tmp_path) -> None:
    path = tmp_path / "a.txt"
    path.write_text("a\nb\nc\n", encoding="utf-8")
    tracker = FileChangeTracker(base_dir=tmp_path)
    tracker.snapshot_file("t1", str(path))
    path.write_text("a\nB\nc\nd\n", encoding="utf-8")

    first = tracker.on_result("t1")
    assert first is not None
    ranges = (set(first.added_ranges), set(first.modified_ranges))

    second = tracker.on_result("t1")
    assert second is first
    assert (second.added_ranges, second.modified_ranges) == ranges
    assert ranges == ({LineRange(3, 3)}, {LineRange(1, 1), LineRange(2, 2)})


def test_unknown_tool_id_returns_none(tmp_path) -> None:
    tracker = FileChangeTracker(base_dir=tmp_path)
    assert tracker.on_result("nope") is None


def test_unchanged_file_is_not_tracked(tmp_path) -> None:
    path = tmp_path / "same.txt"
    path.write_text("same\n", encoding="utf-8")
    tracker = FileChangeTracker(base_dir=tmp_path)
    tracker.snapshot_file("t1", str(path))
    assert tracker.on_result("t1") is None
    assert tracker.tracked_paths == []


def test_reject_restores_first_snapshot_after_several_edits(tmp_path) -> None:
    path = tmp_path / "app.py"
    original = "def main():\n    pass\n"
    path.write_text(original, encoding="utf-8")
    tracker = FileChangeTracker(base_dir=tmp_path)

    for i, content in enumerate([
        "def main():\n    print(1)\n",
        "def main():\n    print(2)\n\nmain()\n",
        "import sys\ndef main():\n    print(2)\n\nmain()\n",
    ]):
        tracker.capture_pre_tool(f"t{i}", "Edit", {"file_path": "app.py"})
        path.write_text(content, encoding="utf-8")
        assert tracker.on_result(f"t{i}") is not None

    tracked = tracker.get("app.py")
    assert tracked is not None
    assert tracked.original_content == original
    added, modified = tracker.ranges_for("app.py")
    assert added == sorted(added)
    assert added and modified

    assert tracker.reject_file(str(path)) is True
    assert path.read_text(encoding="utf-8") == original
    assert tracker.get("app.py") is None


def test_reject_of_created_file_empties_it(tmp_path) -> None:
    tracker = FileChangeTracker(base_dir=tmp_path)
    tracker.capture_pre_tool("t1", "Write", {"file_path": "created.txt", "content": "x"})
    (tmp_path / "created.txt").write_text("x\n", encoding="utf-8")
    tracker.on_result("t1")

    tracker.reject_file("created.txt")
    assert (tmp_path / "created.txt").read_text(encoding="utf-8") == ""


def test_reject_write_failure_keeps_tracking(tmp_path) -> None:
    path = tmp_path / "a.txt"
    path.write_text("old\n", encoding="utf-8")
    tracker = FileChangeTracker(base_dir=tmp_path)
    tracker.snapshot_file("t1", str(path))
    path.write_text("new\n", encoding="utf-8")
    tracker.on_result("t1")

    with patch(
        "agentlink.adapters.file_tracker.atomic_write_text",
        side_effect=PermissionError("read-only file system"),
    ):
        with pytest.raises(RevertError) as excinfo:
            tracker.reject_file(str(path))

    assert excinfo.value.path == str(path.resolve())
    assert tracker.get(str(path)) is not None
    assert path.read_text(encoding="utf-8") == "new\n"

    assert tracker.reject_file(str(path)) is True
    assert path.read_text(encoding="utf-8") == "old\n"


def test_accept_file_and_accept_all_leave_disk_alone(tmp_path) -> None:
    tracker = FileChangeTracker(base_dir=tmp_path)
    for name in ("a.txt", "b.txt"):
        tracker.snapshot_file(name, name)
        (tmp_path / name).write_text("content\n", encoding="utf-8")
        tracker.on_result(name)

    assert tracker.accept_file("a.txt") is True
    assert tracker.accept_file("a.txt") is False
    assert tracker.accept_all() == [str(tmp_path.resolve() / "b.txt")]
    assert tracker.tracked_paths == []
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "content\n"


def test_non_file_tool_is_ignored(tmp_path) -> None:
    tracker = FileChangeTracker(base_dir=tmp_path)
    assert tracker.capture_pre_tool("t1", "Bash", {"command": "touch x"}) is None
    assert not tracker.is_pending("t1")


def test_binary_file_is_not_tracked(tmp_path) -> None:
    path = tmp_path / "blob.bin"
    path.write_bytes(b"\xff\xfe\x00\x81")
    tracker = FileChangeTracker(base_dir=tmp_path)
    tracker.snapshot_file("t1", str(path))
    assert not tracker.is_pending("t1")


def test_clear_drops_state_without_touching_disk(tmp_path) -> None:
    path = tmp_path / "a.txt"
    tracker = FileChangeTracker(base_dir=tmp_path)
    tracker.snapshot_file("t1", str(path))
    path.write_text("hello\n", encoding="utf-8")
    tracker.on_result("t1")
    tracker.snapshot_file("t2", str(path))

    tracker.clear()

    assert tracker.tracked_paths == []
    assert not tracker.is_pending("t2")
    assert path.read_text(encoding="utf-8") == "hello\n"
