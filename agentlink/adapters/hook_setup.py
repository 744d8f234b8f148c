"""Generates the agent settings file that installs the approval hook.

The settings live in a private temp directory created on first install
and removed by ``cleanup()``. The hook itself is this package's
``agentlink.hooks.approval_hook`` module run by the current interpreter,
so nothing executable is written to disk.
"""
from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HOOK_MODULE = "agentlink.hooks.approval_hook"
SETTINGS_FILENAME = "settings.json"


def hook_command(port: int, timeout_seconds: float, python: str | None = None) -> str:
    """Shell command line the agent runs before each tool use."""
    argv = [
        python or sys.executable,
        "-m", HOOK_MODULE,
        "--port", str(port),
        "--timeout", f"{timeout_seconds:g}",
    ]
    if os.name == "nt":
        return subprocess.list2cmdline(argv)
    return shlex.join(argv)


def build_hook_settings(command: str) -> dict[str, Any]:
    return {
        "hooks": {
            "PreToolUse": [
                {
                    "matcher": "",
                    "hooks": [{"type": "command", "command": command}],
                }
            ]
        }
    }


class HookInstaller:
    """Owns the temp directory holding the hook settings file."""

    def __init__(self, *, python: str | None = None, timeout_seconds: float = 120.0) -> None:
        self._python = python or sys.executable
        self._timeout = timeout_seconds
        self._dir: Path | None = None

    @property
    def settings_path(self) -> Path | None:
        if self._dir is None:
            return None
        return self._dir / SETTINGS_FILENAME

    def install(self, port: int) -> Path:
        """Write settings pointing the hook at *port*; return their path."""
        if self._dir is None:
            self._dir = Path(tempfile.mkdtemp(prefix="agentlink-hook-"))
        path = self._dir / SETTINGS_FILENAME
        settings = build_hook_settings(hook_command(port, self._timeout, self._python))
        path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
        logger.info("Approval hook settings written to %s (port %d)", path, port)
        return path

    def cleanup(self) -> None:
        hook_dir, self._dir = self._dir, None
        if hook_dir is None:
            return
        shutil.rmtree(hook_dir, ignore_errors=True)
        logger.debug("Removed hook directory %s", hook_dir)
