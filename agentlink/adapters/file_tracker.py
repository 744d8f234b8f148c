"""File change tracker for edits made by agent tools.

Snapshots a file before a file-mutating tool runs, diffs it against the
post-tool content once the tool result arrives, and lets the host
accept (forget) or reject (revert) the accumulated changes per file.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentlink.engine.errors import RevertError
from agentlink.engine.models import FILE_MUTATING_TOOLS
from agentlink.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

_TOOL_NAME_ALIASES: dict[str, str] = {
    "write": "Write",
    "write_file": "Write",
    "file_write": "Write",
    "create_file": "Write",
    "edit": "Edit",
    "edit_file": "Edit",
    "file_edit": "Edit",
    "str_replace": "Edit",
    "multiedit": "MultiEdit",
    "multi_edit": "MultiEdit",
    "notebookedit": "NotebookEdit",
    "notebook_edit": "NotebookEdit",
    "read": "Read",
    "read_file": "Read",
    "bash": "Bash",
}

# Input keys that name the file a tool writes, in lookup order.
_PATH_KEYS = ("file_path", "notebook_path", "path")


def normalize_tool_name(tool_name: str) -> str:
    """Map provider-specific tool aliases to canonical names."""
    if not tool_name:
        return ""
    bare_name = tool_name
    if bare_name.startswith("mcp__") and bare_name.count("__") >= 2:
        bare_name = bare_name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(bare_name.lower(), bare_name)


def is_file_tool(tool_name: str) -> bool:
    return normalize_tool_name(tool_name) in FILE_MUTATING_TOOLS


def target_path(tool_input: dict[str, Any]) -> str:
    for key in _PATH_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _resolve_path(path_str: str, base_dir: Path | None) -> str:
    p = Path(path_str).expanduser()
    if not p.is_absolute():
        p = (base_dir or Path.cwd()) / p
    return os.path.abspath(str(p))


def _path_key(path: str) -> str:
    """Comparison key: absolute, case-folded where the OS is, '/' separators."""
    return os.path.normcase(os.path.abspath(path)).replace("\\", "/")


def _split_lines(content: str) -> list[str]:
    return content.splitlines()


@dataclass(frozen=True, order=True)
class LineRange:
    """Inclusive, zero-based span of lines."""
    start: int
    end: int

    @property
    def line_count(self) -> int:
        return self.end - self.start + 1

    def to_dict(self) -> dict[str, int]:
        return {"startLine": self.start, "endLine": self.end}


def compute_line_diff(
    before: list[str], after: list[str]
) -> tuple[set[LineRange], set[LineRange]]:
    """Classify changed lines of *after* as (added, modified).

    Trims the longest common leading and trailing runs. Inside the
    remaining middle regions, lines overlapping the old middle count as
    modified; any surplus new lines count as added. Pure deletions
    produce no ranges (there is no line left in *after* to mark).
    """
    added: set[LineRange] = set()
    modified: set[LineRange] = set()

    if not before:
        if after:
            added.add(LineRange(0, len(after) - 1))
        return added, modified

    min_len = min(len(before), len(after))
    prefix = 0
    while prefix < min_len and before[prefix] == after[prefix]:
        prefix += 1

    suffix = 0
    while (
        suffix < min_len - prefix
        and before[len(before) - 1 - suffix] == after[len(after) - 1 - suffix]
    ):
        suffix += 1

    before_changed = len(before) - suffix - prefix
    after_changed = len(after) - suffix - prefix
    overlap = min(before_changed, after_changed)

    for i in range(max(overlap, 0)):
        line = prefix + i
        modified.add(LineRange(line, line))
    for i in range(max(overlap, 0), after_changed):
        line = prefix + i
        added.add(LineRange(line, line))
    return added, modified


@dataclass
class TrackedFile:
    """Changes the agent made to one file since it first touched it."""
    path: str
    original_content: str
    added_ranges: set[LineRange] = field(default_factory=set)
    modified_ranges: set[LineRange] = field(default_factory=set)

    def merge(self, added: set[LineRange], modified: set[LineRange]) -> None:
        self.added_ranges |= added
        self.modified_ranges |= modified

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "added": [r.to_dict() for r in sorted(self.added_ranges)],
            "modified": [r.to_dict() for r in sorted(self.modified_ranges)],
        }


@dataclass
class _PendingSnapshot:
    path: str
    before: str


class FileChangeTracker:
    """Tracks and reverts file modifications made by agent tools.

    Usage:
        tracker = FileChangeTracker(base_dir=workspace)

        # Before a Write/Edit tool executes:
        tracker.snapshot_file(tool_id, "src/app.py")

        # When its tool_result arrives:
        tracked = tracker.on_result(tool_id)

        # Host decision:
        tracker.reject_file(tracked.path)
    """

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base_dir = Path(base_dir).resolve() if base_dir else None
        self._pending: dict[str, _PendingSnapshot] = {}
        self._files: dict[str, TrackedFile] = {}
        # Content at the first snapshot of a file that is not tracked yet.
        self._originals: dict[str, str] = {}
        # tool id -> path key, for results that were already applied.
        self._applied: dict[str, str] = {}

    @property
    def base_dir(self) -> Path | None:
        return self._base_dir

    @base_dir.setter
    def base_dir(self, value: str | Path | None) -> None:
        self._base_dir = Path(value).resolve() if value else None

    @property
    def tracked_paths(self) -> list[str]:
        return [f.path for f in self._files.values()]

    @property
    def tracked_files(self) -> list[TrackedFile]:
        return list(self._files.values())

    def get(self, path: str) -> TrackedFile | None:
        return self._files.get(_path_key(self._resolve(path)))

    def ranges_for(self, path: str) -> tuple[list[LineRange], list[LineRange]]:
        """Sorted ``(added, modified)`` ranges for *path*; empty when untracked."""
        tracked = self.get(path)
        if tracked is None:
            return [], []
        return sorted(tracked.added_ranges), sorted(tracked.modified_ranges)

    def is_pending(self, tool_id: str) -> bool:
        return tool_id in self._pending

    def _resolve(self, path: str) -> str:
        return _resolve_path(path, self._base_dir)

    @staticmethod
    def _read(path: str) -> str | None:
        try:
            with open(path, encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError):
            logger.debug("Could not read %s", path, exc_info=True)
            return None

    # ── Snapshot / result ──

    def snapshot_file(self, tool_id: str, path: str) -> str:
        """Record *path*'s current content until *tool_id*'s result arrives.

        A missing file snapshots as empty content. Returns the resolved
        absolute path.
        """
        abs_path = self._resolve(path)
        if tool_id in self._pending:
            return self._pending[tool_id].path
        content = self._read(abs_path)
        if content is None and os.path.exists(abs_path):
            # Binary or unreadable: a revert could not restore it faithfully.
            logger.warning("Not tracking %s: content is not readable text", abs_path)
            return abs_path
        before = content or ""
        self._pending[tool_id] = _PendingSnapshot(path=abs_path, before=before)
        key = _path_key(abs_path)
        if key not in self._files and key not in self._originals:
            self._originals[key] = before
        logger.debug(
            "snapshot_file: tool %s path=%s bytes=%d",
            tool_id[:12], abs_path, len(before),
        )
        return abs_path

    def capture_pre_tool(
        self, tool_id: str, tool_name: str, tool_input: dict[str, Any]
    ) -> str | None:
        """Snapshot the target of a file-mutating tool; ignore other tools."""
        if not is_file_tool(tool_name):
            return None
        path = target_path(tool_input)
        if not path:
            logger.debug("capture_pre_tool: %s %s has no file path", tool_name, tool_id[:12])
            return None
        return self.snapshot_file(tool_id, path)

    def on_result(self, tool_id: str) -> TrackedFile | None:
        """Diff the snapshotted file against disk and merge the ranges.

        Applying the same result twice changes nothing and returns the
        current entry. Returns None for an unknown *tool_id* or when the
        file did not change.
        """
        pending = self._pending.pop(tool_id, None)
        if pending is None:
            key = self._applied.get(tool_id)
            return self._files.get(key) if key is not None else None
        after = self._read(pending.path)
        key = _path_key(pending.path)
        self._applied[tool_id] = key
        if after is None:
            logger.debug("on_result: %s no longer readable", pending.path)
            self._forget_original(key)
            return None

        added, modified = compute_line_diff(
            _split_lines(pending.before), _split_lines(after)
        )
        tracked = self._files.get(key)
        if tracked is None:
            if not added and not modified and pending.before == after:
                self._forget_original(key)
                return None
            original = self._originals.pop(key, pending.before)
            tracked = TrackedFile(path=pending.path, original_content=original)
            self._files[key] = tracked
        tracked.merge(added, modified)
        logger.info(
            "Tracked change in %s (+%d added, %d modified ranges)",
            tracked.path, len(tracked.added_ranges), len(tracked.modified_ranges),
        )
        return tracked

    def _forget_original(self, key: str) -> None:
        if key in self._files:
            return
        if any(_path_key(p.path) == key for p in self._pending.values()):
            return
        self._originals.pop(key, None)

    # ── Host decisions ──

    def accept_file(self, path: str) -> bool:
        """Stop tracking *path*; disk content is left as-is."""
        key = _path_key(self._resolve(path))
        tracked = self._files.pop(key, None)
        if tracked is None:
            return False
        logger.info("Accepted changes to %s", tracked.path)
        return True

    def accept_all(self) -> list[str]:
        paths = self.tracked_paths
        self._files.clear()
        if paths:
            logger.info("Accepted changes to %d file(s)", len(paths))
        return paths

    def reject_file(self, path: str) -> bool:
        """Restore *path* to its content before the agent first touched it.

        Raises RevertError when the write fails; tracking is kept so the
        host can retry.
        """
        key = _path_key(self._resolve(path))
        tracked = self._files.get(key)
        if tracked is None:
            return False
        try:
            atomic_write_text(Path(tracked.path), tracked.original_content)
        except OSError as exc:
            logger.error("Failed to revert %s: %s", tracked.path, exc)
            raise RevertError(tracked.path, str(exc)) from exc
        del self._files[key]
        logger.info("Reverted %s", tracked.path)
        return True

    def clear(self) -> None:
        """Drop all tracking state without touching disk."""
        self._pending.clear()
        self._files.clear()
        self._originals.clear()
        self._applied.clear()
