from __future__ import annotations

import json
import shlex

from agentlink.adapters.hook_setup import (
    HOOK_MODULE,
    HookInstaller,
    build_hook_settings,
    hook_command,
)


def test_hook_command_runs_module_with_port_and_timeout() -> None:
    command = hook_command(4321, 90.0, python="/usr/bin/python3")
    assert shlex.split(command) == [
        "/usr/bin/python3", "-m", HOOK_MODULE, "--port", "4321", "--timeout", "90",
    ]


def test_hook_command_quotes_interpreter_path_with_spaces() -> None:
    command = hook_command(1, 120.0, python="/opt/my python/bin/python")
    assert shlex.split(command)[0] == "/opt/my python/bin/python"


def test_settings_register_pre_tool_use_hook_for_every_tool() -> None:
    settings = build_hook_settings("hook --port 1")
    (entry,) = settings["hooks"]["PreToolUse"]
    assert entry["matcher"] == ""
    assert entry["hooks"] == [{"type": "command", "command": "hook --port 1"}]


def test_installer_writes_settings_and_cleans_up() -> None:
    installer = HookInstaller(python="python3", timeout_seconds=30)
    assert installer.settings_path is None

    path = installer.install(5555)
    try:
        assert path == installer.settings_path
        data = json.loads(path.read_text(encoding="utf-8"))
        command = data["hooks"]["PreToolUse"][0]["hooks"][0]["command"]
        assert "--port 5555" in command
        assert "--timeout 30" in command

        # Reinstalling for a new port rewrites the same file.
        assert installer.install(6666) == path
        assert "--port 6666" in path.read_text(encoding="utf-8")
    finally:
        installer.cleanup()

    assert not path.exists()
    assert not path.parent.exists()
    assert installer.settings_path is None
    installer.cleanup()
