from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from agentlink.adapters.events import (
    AgentEvent,
    ApprovalRequested,
    ApprovalResolved,
    FileChangesUpdated,
    RawOutput,
    SessionEnded,
    SessionErrored,
    SessionStarted,
    TranscriptUpdated,
    TurnFinished,
)
from agentlink.adapters.session import AgentSession
from agentlink.engine.config import SessionConfig
from agentlink.engine.errors import AgentNotFoundError, NotRunningError
from agentlink.engine.models import ApprovalMode
from agentlink.engine.process import AgentProcess
from agentlink.hooks.approval_hook import run_hook
from agentlink.shared.models.transcript import Role

FAKE_AGENT = str(Path(__file__).with_name("fake_agent.py"))


class Recorder:
    def __init__(self) -> None:
        self.events: list[AgentEvent] = []

    async def __call__(self, event: AgentEvent) -> None:
        self.events.append(event)

    def of(self, kind: type) -> list:
        return [e for e in self.events if isinstance(e, kind)]

    async def wait_for(self, kind: type, count: int = 1, timeout: float = 10.0) -> list:
        async def poll() -> None:
            while len(self.of(kind)) < count:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(poll(), timeout=timeout)
        return self.of(kind)


def _session(tmp_path: Path, recorder: Recorder, **config) -> AgentSession:
    cfg = SessionConfig(cwd=str(tmp_path), stop_grace_seconds=2.0, **config)
    process = AgentProcess([sys.executable, FAKE_AGENT], stop_grace_seconds=2.0)
    return AgentSession(cfg, notify=recorder, process=process)


def _hook_stdin(tool_name: str, tool_input: dict) -> str:
    return json.dumps({"tool_name": tool_name, "tool_input": tool_input})


@pytest.mark.asyncio
async def test_prompt_round_trip_builds_transcript(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        assert await session.send_prompt("hi") is True
        (finished,) = await recorder.wait_for(TurnFinished)
        assert finished.is_error is False
        assert finished.duration_ms == 7

        started = recorder.of(SessionStarted)
        assert started[0].session_id == "fake-session-1"
        assert started[0].model == "fake-model"
        assert session.conversation_id == "fake-session-1"
        assert recorder.of(TranscriptUpdated)
        assert RawOutput(text="fake agent warming up") in recorder.events

        user, assistant = session.turns
        assert (user.role, user.text) == (Role.USER, "hi")
        assert assistant.role == Role.ASSISTANT
        assert assistant.text.startswith("Echo: hi [session=")
        assert len(assistant.text_blocks()) == 1

        await session.send_prompt("again")
        await recorder.wait_for(TurnFinished, count=2)
        assert session.turns[-1].text == "Echo: again [session=fake-session-1]"
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_blank_prompt_is_ignored(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        assert await session.send_prompt("   ") is False
        assert not session.running
        assert session.turns == []
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_written_file_is_tracked_and_can_be_rejected(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        await session.send_prompt("write notes.txt one\\ntwo\\nthree")
        await recorder.wait_for(TurnFinished)

        target = tmp_path / "notes.txt"
        assert target.read_text(encoding="utf-8") == "one\ntwo\nthree"
        (update,) = recorder.of(FileChangesUpdated)
        assert update.paths == [str(target.resolve())]

        tool = session.turns[-1].tool_blocks()[0]
        assert tool.name == "Write"
        assert tool.input["file_path"] == "notes.txt"
        assert tool.result == "File written"

        added, modified = session.tracker.ranges_for("notes.txt")
        assert sum(r.line_count for r in added) == 3
        assert modified == []

        assert await session.reject_file("notes.txt") is True
        assert target.read_text(encoding="utf-8") == ""
        assert recorder.of(FileChangesUpdated)[-1].paths == []
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_ask_first_installs_hook_and_routes_decisions(tmp_path, monkeypatch) -> None:
    args_file = tmp_path / "args.json"
    monkeypatch.setenv("FAKE_AGENT_ARGS_FILE", str(args_file))
    recorder = Recorder()
    decisions: list[tuple[str, str]] = []

    async def decide(request_id: str, tool_name: str, detail: str) -> bool:
        decisions.append((tool_name, detail))
        return True

    cfg = SessionConfig(cwd=str(tmp_path), stop_grace_seconds=2.0)
    process = AgentProcess([sys.executable, FAKE_AGENT], stop_grace_seconds=2.0)
    session = AgentSession(cfg, notify=recorder, decide=decide, process=process)
    try:
        await session.send_prompt("hi", mode=ApprovalMode.ASK_FIRST)
        await recorder.wait_for(SessionStarted)

        args = json.loads(args_file.read_text(encoding="utf-8"))
        assert args[args.index("--permission-mode") + 1] == "bypassPermissions"
        settings_path = Path(args[args.index("--settings") + 1])
        settings = json.loads(settings_path.read_text(encoding="utf-8"))
        command = settings["hooks"]["PreToolUse"][0]["hooks"][0]["command"]

        gateway = session.gateway
        assert gateway is not None and gateway.running
        assert f"--port {gateway.port}" in command

        code, out = await run_hook(_hook_stdin("Bash", {"command": "make test"}), gateway.port, timeout=5)
        assert code == 0
        assert json.loads(out)["hookSpecificOutput"]["permissionDecision"] == "allow"
        assert decisions == [("Bash", "Command: make test")]
        assert recorder.of(ApprovalRequested)[0].detail == "Command: make test"
        assert recorder.of(ApprovalResolved)[0].approved is True
    finally:
        await session.close()

    assert not settings_path.exists()
    assert session.gateway is None


@pytest.mark.asyncio
async def test_host_can_deny_through_resolve_approval(tmp_path) -> None:
    session: AgentSession | None = None
    events: list[AgentEvent] = []

    async def notify(event: AgentEvent) -> None:
        events.append(event)
        if isinstance(event, ApprovalRequested):
            assert session is not None
            assert session.resolve_approval(event.request_id, False) is True

    cfg = SessionConfig(cwd=str(tmp_path), stop_grace_seconds=2.0, approval_mode=ApprovalMode.ASK_FIRST)
    process = AgentProcess([sys.executable, FAKE_AGENT], stop_grace_seconds=2.0)
    session = AgentSession(cfg, notify=notify, process=process)
    try:
        await session.send_prompt("hi")
        assert session.gateway is not None
        code, out = await run_hook(
            _hook_stdin("Write", {"file_path": "x.txt", "content": "x"}), session.gateway.port, timeout=5,
        )
        decision = json.loads(out)["hookSpecificOutput"]
        assert (code, decision["permissionDecision"]) == (0, "deny")
        assert decision["permissionDecisionReason"] == "User denied this tool use"
        assert len(session.approvals) == 0
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_changing_mode_restarts_agent(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        await session.send_prompt("hi")
        await recorder.wait_for(TurnFinished)
        assert session.running

        await session.set_mode("planFirst")
        assert session.mode == ApprovalMode.PLAN_FIRST
        assert not session.running

        await session.send_prompt("again")
        await recorder.wait_for(TurnFinished, count=2)
        assert session.running
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_new_chat_clears_state(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        await session.send_prompt("write a.txt hello")
        await recorder.wait_for(TurnFinished)
        assert session.tracker.tracked_paths

        await session.new_chat()

        assert session.turns == []
        assert session.tracker.tracked_paths == []
        assert session.conversation_id is None
        assert not session.running
        assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "hello"
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_stop_generation_keeps_partial_turn(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        await session.send_prompt("hi")
        await recorder.wait_for(TurnFinished)
        turns_before = [t.to_dict() for t in session.turns]

        await session.stop_generation()

        assert not session.running
        assert [t.to_dict() for t in session.turns] == turns_before
    finally:
        await session.close()


@pytest.mark.skipif(sys.platform == "win32", reason="relies on a SIGTERM handler in the agent")
@pytest.mark.asyncio
async def test_stop_while_streaming_keeps_one_assistant_turn(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        await session.send_prompt("slow")

        async def partial_arrived() -> None:
            while not (session.turns and session.turns[-1].text == "Partial"):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(partial_arrived(), timeout=10.0)
        await session.stop_generation()
        await recorder.wait_for(SessionEnded)

        assert [t.role for t in session.turns] == [Role.USER, Role.ASSISTANT]
        assert [t.text for t in session.turns] == ["slow", "Partial"]

        await session.send_prompt("again")
        await recorder.wait_for(TurnFinished)
        assert [t.role for t in session.turns] == [
            Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT,
        ]
        assert session.turns[-1].text.startswith("Echo: again")
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_host_answers_interactive_question(tmp_path, monkeypatch) -> None:
    args_file = tmp_path / "args.json"
    monkeypatch.setenv("FAKE_AGENT_ARGS_FILE", str(args_file))
    recorder = Recorder()
    session = _session(tmp_path, recorder, allowed_tools=["Read"])
    try:
        await session.send_prompt("ask")

        async def question_shown() -> None:
            while session.transcript.find_tool("toolu_ask_1") is None:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(question_shown(), timeout=10.0)
        await session.answer_tool("toolu_ask_1", "blue")
        await recorder.wait_for(TurnFinished)

        block = session.transcript.find_tool("toolu_ask_1")
        assert block.name == "AskUserQuestion"
        assert block.result == "blue"
        assert session.turns[-1].text == "Answer: blue"
        args = json.loads(args_file.read_text(encoding="utf-8"))
        assert args[args.index("--allowedTools") + 1] == "AskUserQuestion,Read"
    finally:
        await session.close()

    with pytest.raises(NotRunningError):
        await session.answer_tool("toolu_ask_1", "blue")


@pytest.mark.asyncio
async def test_agent_crash_is_reported(tmp_path) -> None:
    recorder = Recorder()
    session = _session(tmp_path, recorder)
    try:
        await session.send_prompt("crash")
        (error,) = await recorder.wait_for(SessionErrored)
        assert error.error_type == "AgentExitError"
        assert "code 3" in error.message
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_missing_agent_binary(tmp_path) -> None:
    recorder = Recorder()
    cfg = SessionConfig(command="agentlink-no-such-agent-binary", cwd=str(tmp_path))
    session = AgentSession(cfg, notify=recorder)
    try:
        with pytest.raises(AgentNotFoundError):
            await session.send_prompt("hi")
        (error,) = await recorder.wait_for(SessionErrored)
        assert error.error_type == "AgentNotFoundError"
        assert session.turns == []
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_transcript_persists_and_resumes(tmp_path, monkeypatch) -> None:
    store_dir = tmp_path / "store"
    recorder = Recorder()
    session = _session(tmp_path, recorder, persist_dir=str(store_dir))
    try:
        await session.send_prompt("remember me")
        await recorder.wait_for(TurnFinished)
    finally:
        await session.close()

    args_file = tmp_path / "args.json"
    monkeypatch.setenv("FAKE_AGENT_ARGS_FILE", str(args_file))
    recorder = Recorder()
    restored = _session(tmp_path, recorder, persist_dir=str(store_dir))
    try:
        assert [t.role for t in restored.turns] == [Role.USER, Role.ASSISTANT]
        assert restored.turns[0].text == "remember me"
        assert restored.conversation_id == "fake-session-1"

        await restored.send_prompt("and now?")
        await recorder.wait_for(TurnFinished)
        args = json.loads(args_file.read_text(encoding="utf-8"))
        assert args[args.index("--resume") + 1] == "fake-session-1"
        assert len(restored.turns) == 4
    finally:
        await restored.close()
