"""AgentSession: the host-facing façade over one agent conversation.

Wires the process supervisor, the transcript reconstructor, the file
change tracker and (in askFirst mode) the permission gateway together,
and reports progress to the host through a single notification
callback.

Usage:
    async def notify(event):
        print(event_to_dict(event))

    session = AgentSession(SessionConfig(cwd="."), notify=notify)
    await session.send_prompt("add a README", mode=ApprovalMode.ASK_FIRST)
    ...
    session.resolve_approval(request_id, True)
    ...
    await session.close()
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any

from agentlink.engine.config import DecisionCallback, SessionConfig
from agentlink.engine.models import ApprovalMode, launch_plan_for
from agentlink.engine.process import AgentProcess
from agentlink.engine.protocol import DEFAULT_SESSION_ID, ResultMessage, SystemMessage
from agentlink.shared.models.transcript import ToolBlock, Turn
from agentlink.shared.services.transcript_store import TranscriptStore

from .approvals import PendingApprovals
from .event_bus import EventBus, Subscription
from .events import (
    AgentEvent,
    ApprovalRequested,
    ApprovalResolved,
    FileChangesUpdated,
    ProcessExited,
    ProcessFailed,
    RawOutput,
    SessionEnded,
    SessionErrored,
    SessionStarted,
    TranscriptUpdated,
    TurnFinished,
)
from .file_tracker import FileChangeTracker, TrackedFile, is_file_tool
from .hook_setup import HookInstaller
from .permission_gateway import ApprovalRequest, PermissionGateway
from .transcript import TranscriptChange, TranscriptReconstructor

logger = logging.getLogger(__name__)


class AgentSession:
    """One conversation with the agent CLI in one workspace."""

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        notify: Any = None,
        decide: DecisionCallback | None = None,
        process: AgentProcess | None = None,
        store: TranscriptStore | None = None,
    ) -> None:
        self.config = config or SessionConfig()
        self._notify = notify
        self._decide_cb = decide

        self.process = process or AgentProcess(
            self.config.command,
            bus=EventBus(self.config.event_queue_size),
            include_partial_messages=self.config.include_partial_messages,
            verbose=self.config.verbose,
            stop_grace_seconds=self.config.stop_grace_seconds,
            stderr_tail_lines=self.config.stderr_tail_lines,
        )
        self.transcript = TranscriptReconstructor()
        self.tracker = FileChangeTracker(base_dir=self.config.cwd)
        self.approvals = PendingApprovals()
        self._gateway: PermissionGateway | None = None
        self._hooks = HookInstaller(timeout_seconds=self.config.hook_timeout_seconds)

        self._mode = ApprovalMode(self.config.approval_mode)
        self._model = self.config.model
        # Conversation id reported by the agent; resumed on the next start.
        self._conversation_id: str | None = None
        self._subscription: Subscription | None = None
        self._pump: asyncio.Task | None = None
        self._decisions: set[asyncio.Task] = set()
        # Tool ids whose target file was already snapshotted.
        self._snapshotted: set[str] = set()
        # Set once the pump has handled the terminal event of the last process.
        self._settled = asyncio.Event()
        self._closed = False

        if store is None and self.config.persist_dir:
            store = TranscriptStore(
                self.config.cwd,
                self.config.persist_dir,
                max_turns=self.config.max_persisted_turns,
                max_tool_text_length=self.config.max_tool_text_length,
            )
        self._store = store
        self._restore()

    # ── Properties ──

    @property
    def mode(self) -> ApprovalMode:
        return self._mode

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def turns(self) -> list[Turn]:
        return self.transcript.turns

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def running(self) -> bool:
        return self.process.running

    @property
    def gateway(self) -> PermissionGateway | None:
        return self._gateway

    # ── Host operations ──

    async def send_prompt(
        self,
        text: str,
        *,
        mode: ApprovalMode | str | None = None,
        model: str | None = None,
    ) -> bool:
        """Send one user message, starting the agent if needed.

        Blank text is ignored and returns False. Raises AgentSpawnError when
        the agent cannot be started.
        """
        if not text or not text.strip():
            return False
        if self._closed:
            raise RuntimeError("session is closed")

        if mode is not None and ApprovalMode(mode) != self._mode:
            await self.set_mode(mode)
        if model is not None and model != self._model:
            self._model = model
            if self.process.running:
                logger.info("Model changed to %s, restarting agent", model)
                await self._stop_process()

        if not self.process.running:
            await self._start()

        self.transcript.add_user_turn(text)
        await self._emit(TranscriptUpdated(turn_count=len(self.transcript.turns)))
        await self.process.send(text)
        return True

    async def stop_generation(self) -> None:
        """Interrupt the current turn; streamed blocks stay as they are."""
        self.transcript.abort()
        await self._stop_process()
        self.approvals.deny_all()
        await self._emit(TranscriptUpdated(turn_count=len(self.transcript.turns)))

    async def new_chat(self) -> None:
        """Start over: no process, no transcript, no tracked files."""
        await self._stop_process()
        self.approvals.deny_all()
        self.transcript.reset()
        self.tracker.clear()
        self._snapshotted.clear()
        self._conversation_id = None
        if self._store is not None:
            self._store.delete()
        await self._emit(TranscriptUpdated(turn_count=0))
        await self._emit(FileChangesUpdated(paths=[]))

    async def set_mode(self, mode: ApprovalMode | str) -> None:
        """Switch approval mode; a running agent is stopped to relaunch with it."""
        new_mode = ApprovalMode(mode)
        if new_mode == self._mode:
            return
        self._mode = new_mode
        logger.info("Approval mode set to %s", new_mode.value)
        if self.process.running:
            await self._stop_process()

    def resolve_approval(self, request_id: str, approved: bool) -> bool:
        """Answer a pending approval. Returns False for unknown/stale ids."""
        return self.approvals.resolve(request_id, approved)

    async def answer_tool(self, tool_use_id: str, text: str, *, is_error: bool = False) -> None:
        """Answer an interactive tool such as AskUserQuestion.

        Raises NotRunningError when no agent is running.
        """
        await self.process.send_tool_result(tool_use_id, text, is_error=is_error)
        block = self.transcript.find_tool(tool_use_id)
        if block is not None:
            block.set_result(text, is_error=is_error)
            await self._emit(TranscriptUpdated(turn_count=len(self.transcript.turns)))

    async def accept_file(self, path: str) -> bool:
        accepted = self.tracker.accept_file(path)
        if accepted:
            await self._emit_file_changes()
        return accepted

    async def accept_all(self) -> list[str]:
        paths = self.tracker.accept_all()
        if paths:
            await self._emit_file_changes()
        return paths

    async def reject_file(self, path: str) -> bool:
        """Revert *path*. RevertError propagates and tracking is kept."""
        rejected = self.tracker.reject_file(path)
        if rejected:
            await self._emit_file_changes()
        return rejected

    def tracked_files(self) -> list[TrackedFile]:
        return self.tracker.tracked_files

    async def close(self) -> None:
        """Stop everything and persist the transcript. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.process.close()
        self.approvals.deny_all()
        for task in list(self._decisions):
            task.cancel()
        if self._gateway is not None:
            await self._gateway.stop()
            self._gateway = None
        self._hooks.cleanup()
        if self._pump is not None:
            try:
                await asyncio.wait_for(self._pump, timeout=self.config.stop_grace_seconds)
            except asyncio.TimeoutError:
                self._pump.cancel()
            self._pump = None
        self._persist()
        logger.info("Session closed")

    # ── Startup ──

    async def _start(self) -> None:
        self._ensure_pump()
        plan = launch_plan_for(self._mode)
        settings_path = None
        if plan.needs_hook:
            port = await self._ensure_gateway()
            settings_path = self._hooks.install(port)
        # On spawn failure the ProcessFailed event reaches the pump and the
        # error propagates to the caller.
        await self.process.start(
            self.config.cwd,
            plan.permission_mode,
            settings_path,
            model=self._model,
            resume=self._conversation_id,
            allowed_tools=self.config.allowed_tools or None,
        )

    async def _ensure_gateway(self) -> int:
        if self._gateway is None:
            self._gateway = PermissionGateway(
                self._decide,
                approvals=self.approvals,
                detail_max_chars=self.config.detail_max_chars,
            )
        return await self._gateway.start()

    async def _stop_process(self) -> None:
        """Stop the agent and let the pump drain what it already wrote."""
        if not self.process.running:
            await self.process.stop()
            return
        self._settled.clear()
        await self.process.stop()
        if self._pump is None or self._pump.done():
            return
        try:
            await asyncio.wait_for(self._settled.wait(), timeout=self.config.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Event feed did not settle after stop")

    def _ensure_pump(self) -> None:
        if self._pump is not None and not self._pump.done():
            return
        if self._subscription is None:
            self._subscription = self.process.subscribe()
        self._pump = asyncio.create_task(self._run_pump(self._subscription))

    # ── Approvals ──

    async def _decide(self, request: ApprovalRequest) -> bool:
        entry = self.approvals.create(request.tool_name, request.detail, request.tool_input)
        decision: asyncio.Task | None = None
        if self._decide_cb is not None:
            decision = asyncio.ensure_future(
                self._decide_cb(entry.request_id, entry.tool_name, entry.detail)
            )
            self._decisions.add(decision)
            decision.add_done_callback(
                lambda task, request_id=entry.request_id: self._on_decided(request_id, task)
            )
        await self._emit(ApprovalRequested(
            request_id=entry.request_id,
            tool_name=entry.tool_name,
            detail=entry.detail,
        ))
        try:
            approved = await self.approvals.wait(
                entry, timeout=self.config.approval_timeout_seconds,
            )
        finally:
            if decision is not None and not decision.done():
                decision.cancel()
        await self._emit(ApprovalResolved(request_id=entry.request_id, approved=approved))
        return approved

    def _on_decided(self, request_id: str, task: asyncio.Task) -> None:
        self._decisions.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Approval callback for %s failed: %s", request_id, exc)
            self.approvals.resolve(request_id, False)
            return
        self.approvals.resolve(request_id, bool(task.result()))

    # ── Event pump ──

    async def _run_pump(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error handling %s", type(event).__name__)

    async def _handle_event(self, event: Any) -> None:
        if isinstance(event, RawOutput):
            await self._emit(event)
            return
        if isinstance(event, ProcessFailed):
            self.transcript.abort()
            self.approvals.deny_all()
            error = event.error
            await self._emit(SessionErrored(
                message=str(error) if error is not None else "agent failed",
                error_type=type(error).__name__ if error is not None else "",
            ))
            await self._emit(TranscriptUpdated(turn_count=len(self.transcript.turns)))
            self._settled.set()
            return
        if isinstance(event, ProcessExited):
            self.transcript.abort()
            self.approvals.deny_all()
            await self._emit(SessionEnded(code=event.code))
            self._settled.set()
            return

        if isinstance(event, SystemMessage) and event.subtype == "init":
            if event.session_id and event.session_id != DEFAULT_SESSION_ID:
                self._conversation_id = event.session_id
            await self._emit(SessionStarted(
                session_id=event.session_id or "",
                model=event.model,
                tools=list(event.tools),
            ))

        change = self.transcript.apply(event)
        await self._track_files(change)
        if change:
            await self._emit(TranscriptUpdated(turn_count=len(self.transcript.turns)))

        if isinstance(event, ResultMessage):
            if event.session_id and event.session_id != DEFAULT_SESSION_ID:
                self._conversation_id = event.session_id
            await self._emit(TurnFinished(
                is_error=event.is_error,
                duration_ms=event.duration_ms,
                cost_usd=event.total_cost_usd,
            ))
            self._persist()

    async def _track_files(self, change: TranscriptChange) -> None:
        for block in change.tools_ready:
            self._snapshot(block)
        changed = False
        for block in change.tools_finished:
            if not is_file_tool(block.name):
                continue
            if self.tracker.on_result(block.id) is not None:
                changed = True
        if changed:
            await self._emit_file_changes()

    def _snapshot(self, block: ToolBlock) -> None:
        if block.id in self._snapshotted or not is_file_tool(block.name):
            return
        if not isinstance(block.input, dict):
            return
        self._snapshotted.add(block.id)
        self.tracker.capture_pre_tool(block.id, block.name, block.input)

    # ── Notifications / persistence ──

    async def _emit_file_changes(self) -> None:
        await self._emit(FileChangesUpdated(paths=self.tracker.tracked_paths))

    async def _emit(self, event: AgentEvent) -> None:
        if self._notify is None:
            return
        try:
            result = self._notify(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Notification callback failed for %s", event.event_type)

    def _restore(self) -> None:
        if self._store is None:
            return
        saved = self._store.load()
        if saved is None:
            return
        self.transcript.load(saved.turns)
        if saved.session_id and saved.session_id != DEFAULT_SESSION_ID:
            self._conversation_id = saved.session_id
        logger.info(
            "Restored %d turn(s) from %s", len(saved.turns), self._store.path,
        )

    def _persist(self) -> None:
        if self._store is None:
            return
        try:
            self._store.save(self.transcript.turns, self._conversation_id)
        except OSError as exc:
            logger.error("Failed to save transcript to %s: %s", self._store.path, exc)
