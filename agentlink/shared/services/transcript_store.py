"""Transcript persistence: save and restore a workspace's conversation.

Storage layout:
    {base_dir}/{workspace_key}.json

where {workspace_key} is the workspace directory name plus a short hash
of its absolute path, so two checkouts with the same name do not
collide. Only the most recent turns are kept and long tool output is
clipped; the file is a convenience for re-opening a conversation, not
an archive.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from agentlink.shared.models.transcript import ToolBlock, Turn
from agentlink.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
DEFAULT_BASE_DIR = Path.home() / ".agentlink" / "sessions"


def workspace_key(cwd: str | Path) -> str:
    resolved = Path(cwd).expanduser().resolve()
    digest = hashlib.sha1(str(resolved).encode("utf-8")).hexdigest()[:12]
    return f"{resolved.name or 'root'}-{digest}"


@dataclass
class SavedTranscript:
    session_id: str | None = None
    turns: list[Turn] = field(default_factory=list)
    saved_at: str = ""


def _clip(text: str | None, limit: int) -> str | None:
    if text is None or limit <= 0:
        return text
    return text[:limit]


class TranscriptStore:
    """Save and load one workspace's transcript as JSON."""

    def __init__(
        self,
        cwd: str | Path,
        base_dir: str | Path | None = None,
        *,
        max_turns: int = 100,
        max_tool_text_length: int = 500,
    ) -> None:
        self._dir = Path(base_dir).expanduser() if base_dir else DEFAULT_BASE_DIR
        self._path = self._dir / f"{workspace_key(cwd)}.json"
        self._max_turns = max_turns
        self._max_tool_text = max_tool_text_length

    @property
    def path(self) -> Path:
        return self._path

    def save(self, turns: list[Turn], session_id: str | None = None) -> Path:
        kept = turns[-self._max_turns:] if self._max_turns > 0 else list(turns)
        serialized = []
        for turn in kept:
            data = turn.to_dict()
            for block in data["blocks"]:
                if block.get("type") == "tool_use":
                    block["result"] = _clip(block.get("result"), self._max_tool_text)
                    block["error"] = _clip(block.get("error"), self._max_tool_text)
                    block["streaming"] = False
            serialized.append(data)

        payload = {
            "version": FORMAT_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "turns": serialized,
        }
        atomic_write_text(self._path, json.dumps(payload))
        logger.debug("Saved %d turn(s) to %s", len(serialized), self._path)
        return self._path

    def load(self) -> SavedTranscript | None:
        """Return the saved transcript, or None when there is none usable."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable transcript %s: %s", self._path, exc)
            return None
        if not isinstance(data, dict) or data.get("version") != FORMAT_VERSION:
            logger.warning("Ignoring transcript %s with unknown format", self._path)
            return None

        turns: list[Turn] = []
        for raw in data.get("turns", []):
            try:
                turn = Turn.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("Skipping malformed turn in %s: %s", self._path, exc)
                continue
            for block in turn.blocks:
                if isinstance(block, ToolBlock):
                    block.streaming = False
            turns.append(turn)
        return SavedTranscript(
            session_id=data.get("session_id"),
            turns=turns,
            saved_at=data.get("saved_at", ""),
        )

    def delete(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
