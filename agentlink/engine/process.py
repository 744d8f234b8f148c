"""Agent subprocess supervisor.

Owns at most one live agent process. Stdout is consumed continuously
through a LineFramer and decoded into protocol messages, which are
published on the supervisor's EventBus together with exactly one
terminal event (ProcessExited or ProcessFailed) per start() attempt.

Usage:
    proc = AgentProcess("claude")
    events = proc.subscribe()
    await proc.start(cwd, PermissionMode.BYPASS)
    await proc.send("hello")
    async for event in events:
        ...
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections import deque
from collections.abc import Sequence
from pathlib import Path

from agentlink.adapters.event_bus import EventBus, Subscription
from agentlink.adapters.events import (
    ProcessExited,
    ProcessFailed,
    RawOutput,
    SupervisorEvent,
)

from .config import SCRUBBED_ENV_VARS
from .errors import (
    AgentExitError,
    AgentNotFoundError,
    AgentSpawnError,
    NotRunningError,
    ProtocolError,
)
from .framing import LineFramer
from .models import ALWAYS_ALLOWED_TOOLS, PermissionMode, ProcessState
from .protocol import (
    DEFAULT_SESSION_ID,
    SystemMessage,
    decode_message,
    encode_tool_result,
    encode_user_message,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


def resolve_command(command: str) -> str:
    """Return the absolute path of *command* when it is on PATH."""
    return shutil.which(command) or command


def is_available(command: str = "claude") -> bool:
    return shutil.which(command) is not None


async def agent_version(command: str = "claude") -> str | None:
    """Return the agent's ``--version`` output, or None if it cannot run."""
    try:
        proc = await asyncio.create_subprocess_exec(
            resolve_command(command), "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=10.0)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("agent_version(%s) failed: %s", command, exc)
        return None
    if proc.returncode != 0:
        return None
    return stdout.decode("utf-8", errors="replace").strip() or None


def build_child_env(base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    for name in SCRUBBED_ENV_VARS:
        env.pop(name, None)
    return env


class AgentProcess:
    """Supervises one agent subprocess at a time."""

    def __init__(
        self,
        command: str | Sequence[str] = "claude",
        *,
        bus: EventBus | None = None,
        include_partial_messages: bool = True,
        verbose: bool = True,
        stop_grace_seconds: float = 5.0,
        stderr_tail_lines: int = 50,
        env: dict[str, str] | None = None,
    ) -> None:
        # A sequence is a launcher prefix, e.g. [sys.executable, "agent.py"].
        if isinstance(command, str):
            self._argv_prefix = [command]
        else:
            self._argv_prefix = list(command)
        self._command = self._argv_prefix[0]
        self._bus = bus or EventBus()
        self._include_partial = include_partial_messages
        self._verbose = verbose
        self._stop_grace = stop_grace_seconds
        self._env = env

        self._proc: asyncio.subprocess.Process | None = None
        self._state = ProcessState.IDLE
        self._session_id = DEFAULT_SESSION_ID
        self._framer = LineFramer()
        self._stderr_tail: deque[str] = deque(maxlen=stderr_tail_lines)
        self._watcher: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stopping = False
        # Bumped on every start(); events from older attempts are discarded.
        self._generation = 0
        self._terminal_sent = True
        self._write_lock = asyncio.Lock()

    # ── Properties ──

    @property
    def events(self) -> EventBus:
        return self._bus

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def running(self) -> bool:
        return (
            self._proc is not None
            and self._proc.returncode is None
            and self._state == ProcessState.RUNNING
        )

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def subscribe(self) -> Subscription:
        return self._bus.subscribe()

    # ── Lifecycle ──

    def build_args(
        self,
        permission_mode: PermissionMode | str,
        settings_path: str | Path | None = None,
        *,
        model: str | None = None,
        resume: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> list[str]:
        args = [
            "-p",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
        ]
        if self._verbose:
            args.append("--verbose")
        if self._include_partial:
            args.append("--include-partial-messages")
        args.extend(["--permission-mode", PermissionMode(permission_mode).value])
        if settings_path:
            args.extend(["--settings", str(settings_path)])
        if model:
            args.extend(["--model", model])
        if resume:
            args.extend(["--resume", resume])
        tools = list(ALWAYS_ALLOWED_TOOLS)
        tools.extend(t for t in allowed_tools or () if t not in tools)
        args.extend(["--allowedTools", ",".join(tools)])
        return args

    async def start(
        self,
        cwd: str | Path,
        permission_mode: PermissionMode | str = PermissionMode.ACCEPT_EDITS,
        settings_path: str | Path | None = None,
        *,
        model: str | None = None,
        resume: str | None = None,
        allowed_tools: list[str] | None = None,
    ) -> None:
        """Spawn the agent. A running instance is stopped first.

        Raises AgentNotFoundError / AgentSpawnError on spawn failure, after
        publishing the matching ProcessFailed event.
        """
        if self._proc is not None:
            await self.stop()

        self._generation += 1
        generation = self._generation
        self._terminal_sent = False
        self._stopping = False
        self._session_id = DEFAULT_SESSION_ID
        self._framer.reset()
        self._stderr_tail.clear()

        args = self.build_args(
            permission_mode, settings_path,
            model=model, resume=resume, allowed_tools=allowed_tools,
        )
        executable = resolve_command(self._command)
        argv = [executable, *self._argv_prefix[1:], *args]
        logger.info("Starting agent: %s (cwd=%s)", " ".join(argv), cwd)
        try:
            # Argument vector, no shell.
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=build_child_env(self._env),
            )
        except FileNotFoundError as exc:
            if shutil.which(self._command) is None and not os.path.exists(executable):
                error: AgentSpawnError = AgentNotFoundError(self._command)
            else:
                error = AgentSpawnError(self._command, str(exc))
            logger.error("%s", error)
            await self._finish(generation, ProcessFailed(error=error), ProcessState.ERRORED)
            raise error from None
        except (OSError, ValueError) as exc:
            error = AgentSpawnError(self._command, str(exc))
            logger.error("%s", error)
            await self._finish(generation, ProcessFailed(error=error), ProcessState.ERRORED)
            raise error from exc

        self._proc = proc
        self._state = ProcessState.RUNNING
        logger.info("Agent started (pid=%d)", proc.pid)
        self._stderr_task = asyncio.create_task(self._read_stderr(proc))
        self._watcher = asyncio.create_task(self._watch(proc, generation))

    async def send(self, text: str) -> None:
        """Write one user message. Raises NotRunningError without a live process."""
        await self._write(encode_user_message(text, self._session_id))

    async def send_tool_result(
        self, tool_use_id: str, content: str, *, is_error: bool = False
    ) -> None:
        """Answer an interactive tool (e.g. a question to the user)."""
        await self._write(
            encode_tool_result(tool_use_id, content, self._session_id, is_error=is_error)
        )

    async def _write(self, record: str) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None or proc.stdin is None:
            raise NotRunningError()
        if proc.stdin.is_closing():
            raise NotRunningError("agent input stream is closed")
        async with self._write_lock:
            try:
                proc.stdin.write(record.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise NotRunningError(f"agent input stream is closed ({exc})") from exc
        logger.debug("-> agent: %s", record.strip()[:200])

    async def stop(self) -> None:
        """Terminate the agent. Idempotent; never raises."""
        proc = self._proc
        if proc is None:
            return
        self._stopping = True
        generation = self._generation
        try:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            if proc.returncode is None:
                try:
                    proc.terminate()
                    try:
                        await asyncio.wait_for(proc.wait(), timeout=self._stop_grace)
                    except asyncio.TimeoutError:
                        logger.warning("Agent (pid=%d) ignored SIGTERM, killing", proc.pid)
                        proc.kill()
                        await proc.wait()
                except ProcessLookupError:
                    pass
            watcher = self._watcher
            if watcher is not None and not watcher.done():
                try:
                    await asyncio.wait_for(asyncio.shield(watcher), timeout=self._stop_grace)
                except asyncio.TimeoutError:
                    # A grandchild may still hold stdout open.
                    watcher.cancel()
            await self._finish(
                generation, ProcessExited(code=proc.returncode), ProcessState.IDLE
            )
            logger.info("Agent stopped (pid=%d, code=%s)", proc.pid, proc.returncode)
        except Exception:
            logger.exception("Error while stopping agent (pid=%s)", proc.pid)
        finally:
            if self._proc is proc:
                self._proc = None
            if self._stderr_task is not None and not self._stderr_task.done():
                self._stderr_task.cancel()

    async def wait(self) -> int | None:
        """Wait until the current process has exited and been reported."""
        watcher = self._watcher
        if watcher is not None:
            try:
                await asyncio.shield(watcher)
            except asyncio.CancelledError:
                if not watcher.cancelled():
                    raise
        proc = self._proc
        return proc.returncode if proc is not None else None

    async def close(self) -> None:
        """Stop the process and end every subscription."""
        await self.stop()
        self._bus.close()

    # ── Internals ──

    async def _emit(self, generation: int, event: SupervisorEvent) -> None:
        if generation != self._generation or self._terminal_sent:
            return
        await self._bus.publish(event)

    async def _finish(
        self, generation: int, event: SupervisorEvent, state: ProcessState
    ) -> None:
        """Publish the single terminal event of an attempt."""
        if generation != self._generation or self._terminal_sent:
            return
        self._terminal_sent = True
        self._state = state
        await self._bus.publish(event)

    async def _handle_line(self, generation: int, line: str) -> None:
        try:
            message = decode_message(line)
        except ProtocolError as exc:
            logger.debug("%s", exc)
            await self._emit(generation, RawOutput(text=line))
            return
        if message is None:
            return
        if isinstance(message, SystemMessage) and message.subtype == "init" and message.session_id:
            if message.session_id != self._session_id:
                logger.info("Agent session id: %s", message.session_id)
            self._session_id = message.session_id
        await self._emit(generation, message)

    async def _watch(self, proc: asyncio.subprocess.Process, generation: int) -> None:
        assert proc.stdout is not None
        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                for line in self._framer.feed(chunk):
                    await self._handle_line(generation, line)
            for line in self._framer.flush():
                await self._handle_line(generation, line)
        except (ConnectionResetError, BrokenPipeError) as exc:
            logger.debug("Agent stdout closed abruptly: %s", exc)

        code = await proc.wait()
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass

        if self._stopping:
            await self._finish(generation, ProcessExited(code=code), ProcessState.IDLE)
        elif code not in (0, None):
            error = AgentExitError(code, self.stderr_tail)
            logger.error("%s", error)
            await self._finish(generation, ProcessFailed(error=error), ProcessState.ERRORED)
        else:
            logger.info("Agent exited (pid=%d, code=%s)", proc.pid, code)
            await self._finish(generation, ProcessExited(code=code), ProcessState.IDLE)

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                # Line over the StreamReader limit; the reader skips past it.
                continue
            except ConnectionResetError:
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug("agent stderr: %s", text)
