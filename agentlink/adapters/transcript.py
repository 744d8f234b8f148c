"""Streaming transcript reconstruction.

The agent may describe one reply through up to three overlapping
channels, and any subset of them may be present for a given build:

1. token stream  -- stream_event records (content_block_start / delta / stop)
2. snapshots     -- complete ``assistant`` messages, instead of or after (1)
3. final result  -- the ``result`` record's plain-text reply

TranscriptReconstructor folds all of them into one ordered list of
turns. The merge rules:

* Text deltas on a block are concatenated in arrival order.
* Tool input fragments are reparsed after every delta; the block keeps
  the last good parse (see ``PartialJsonBuffer``).
* A snapshot's tool blocks are upserted by id: the snapshot's name and
  input win, a result/error already recorded is kept, and no tool
  block is ever removed.
* Text is first-non-empty-wins. A snapshot may only complete streamed
  text it extends (an interrupted stream); it never duplicates it.
* The result text is used only when the turn has no text yet.
* Content from nested sub-agents (``parent_tool_use_id`` set) is not
  rendered.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from agentlink.engine.protocol import (
    AssistantMessage,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageStart,
    MessageStop,
    ProtocolMessage,
    ResultMessage,
    StreamEventMessage,
    TextContent,
    TextDelta,
    ToolResultContent,
    ToolUseContent,
    UserMessage,
)
from agentlink.shared.models.transcript import (
    Block,
    Role,
    TextBlock,
    ToolBlock,
    Turn,
)
from agentlink.shared.partial_json import PartialJsonBuffer

logger = logging.getLogger(__name__)


@dataclass
class TranscriptChange:
    """What a single ``apply`` did to the transcript."""
    changed: bool = False
    # Tool blocks whose input became final (block stop or snapshot).
    tools_ready: list[ToolBlock] = field(default_factory=list)
    # Tool blocks that received a tool_result.
    tools_finished: list[ToolBlock] = field(default_factory=list)
    turn_ended: bool = False

    def __bool__(self) -> bool:
        return self.changed


class TranscriptReconstructor:
    """Builds the turn list from decoded protocol messages.

    Usage:
        transcript = TranscriptReconstructor()
        transcript.add_user_turn("fix the tests")
        for message in messages:
            change = transcript.apply(message)
    """

    def __init__(self) -> None:
        self.turns: list[Turn] = []
        self._assistant: Turn | None = None
        self._open: dict[int, Block] = {}
        self._buffers: dict[int, PartialJsonBuffer] = {}
        self._segment_id: str | None = None
        # Blocks produced by the token stream, keyed by API message id.
        self._segments: dict[str | None, list[Block]] = {}
        # Set by abort(); late output of the interrupted turn is ignored
        # until the next user turn.
        self._aborted = False

    # ── Turn lifecycle ──

    def add_user_turn(self, text: str) -> Turn:
        self._clear_streaming()
        self._assistant = None
        self._aborted = False
        turn = Turn(role=Role.USER, blocks=[TextBlock(text=text)])
        self.turns.append(turn)
        return turn

    def end_turn(self) -> None:
        """Normal completion: settle open tool inputs, drop buffers."""
        if self._assistant is not None:
            for index, buf in self._buffers.items():
                block = self._open.get(index)
                if isinstance(block, ToolBlock):
                    block.input = buf.finish()
            for block in self._assistant.tool_blocks():
                block.streaming = False
        self._clear_streaming()
        self._assistant = None

    def abort(self) -> None:
        """Interrupted turn: partial blocks stay exactly as they are."""
        self._clear_streaming()
        self._assistant = None
        self._aborted = True

    def reset(self) -> None:
        self.turns.clear()
        self._clear_streaming()
        self._assistant = None
        self._aborted = False

    def load(self, turns: list[Turn]) -> None:
        """Replace the transcript with restored turns."""
        self.reset()
        for turn in turns:
            for block in turn.tool_blocks():
                block.streaming = False
        self.turns.extend(turns)

    @property
    def current_turn(self) -> Turn | None:
        return self._assistant

    def find_tool(self, tool_id: str) -> ToolBlock | None:
        for turn in reversed(self.turns):
            block = turn.find_tool(tool_id)
            if block is not None:
                return block
        return None

    def _clear_streaming(self) -> None:
        self._open.clear()
        self._buffers.clear()
        self._segments.clear()
        self._segment_id = None

    def _ensure_assistant(self) -> Turn:
        if self._assistant is None:
            self._assistant = Turn(role=Role.ASSISTANT)
            self.turns.append(self._assistant)
        return self._assistant

    def _track(self, block: Block) -> None:
        self._segments.setdefault(self._segment_id, []).append(block)

    # ── Dispatch ──

    def apply(self, message: ProtocolMessage) -> TranscriptChange:
        if self._aborted:
            logger.debug("Ignoring %s after abort", type(message).__name__)
            return TranscriptChange()
        if isinstance(message, StreamEventMessage):
            if message.parent_tool_use_id:
                return TranscriptChange()
            return self._apply_stream_event(message)
        if isinstance(message, AssistantMessage):
            if message.parent_tool_use_id:
                return TranscriptChange()
            return self._apply_snapshot(message)
        if isinstance(message, UserMessage):
            if message.parent_tool_use_id:
                return TranscriptChange()
            return self._apply_tool_results(message)
        if isinstance(message, ResultMessage):
            return self._apply_result(message)
        return TranscriptChange()

    # ── Channel 1: token stream ──

    def _apply_stream_event(self, message: StreamEventMessage) -> TranscriptChange:
        event = message.event
        change = TranscriptChange()

        if isinstance(event, MessageStart):
            self._open.clear()
            self._buffers.clear()
            self._segment_id = event.message_id

        elif isinstance(event, ContentBlockStart):
            turn = self._ensure_assistant()
            if isinstance(event.block, TextContent):
                block = TextBlock(text=event.block.text)
                turn.blocks.append(block)
                self._open[event.index] = block
                self._track(block)
                change.changed = True
            elif isinstance(event.block, ToolUseContent):
                existing = turn.find_tool(event.block.id)
                if existing is None:
                    existing = ToolBlock(
                        id=event.block.id,
                        name=event.block.name,
                        input=dict(event.block.input),
                    )
                    turn.blocks.append(existing)
                    self._track(existing)
                    change.changed = True
                self._open[event.index] = existing
                self._buffers[event.index] = PartialJsonBuffer(existing.input)

        elif isinstance(event, ContentBlockDelta):
            if isinstance(event.delta, TextDelta):
                change.changed = self._append_text(event.index, event.delta.text)
            elif isinstance(event.delta, InputJsonDelta):
                change.changed = self._append_json(event.index, event.delta.partial_json)

        elif isinstance(event, ContentBlockStop):
            block = self._open.pop(event.index, None)
            buf = self._buffers.pop(event.index, None)
            if isinstance(block, ToolBlock):
                if buf is not None:
                    block.input = buf.finish()
                block.streaming = False
                change.tools_ready.append(block)
                change.changed = True

        elif isinstance(event, MessageStop):
            for index in sorted(self._open):
                block = self._open[index]
                buf = self._buffers.get(index)
                if isinstance(block, ToolBlock) and block.streaming:
                    if buf is not None:
                        block.input = buf.finish()
                    block.streaming = False
                    change.tools_ready.append(block)
                    change.changed = True
            self._open.clear()
            self._buffers.clear()

        return change

    def _append_text(self, index: int, text: str) -> bool:
        if not text:
            return False
        block = self._open.get(index)
        if not isinstance(block, TextBlock):
            # Delta without a start record: open the block implicitly.
            block = TextBlock()
            self._ensure_assistant().blocks.append(block)
            self._open[index] = block
            self._track(block)
        block.text += text
        return True

    def _append_json(self, index: int, fragment: str) -> bool:
        block = self._open.get(index)
        if not isinstance(block, ToolBlock):
            turn = self._assistant
            candidates = [b for b in turn.tool_blocks() if b.streaming] if turn else []
            if not candidates:
                logger.debug("input_json_delta for index %d with no open tool block", index)
                return False
            block = candidates[-1]
            self._open[index] = block
        buf = self._buffers.get(index)
        if buf is None:
            buf = self._buffers[index] = PartialJsonBuffer(block.input)
        if buf.append(fragment):
            block.input = dict(buf.value)
            return True
        return False

    # ── Channel 2: snapshots ──

    def _apply_snapshot(self, message: AssistantMessage) -> TranscriptChange:
        change = TranscriptChange()
        if not message.content:
            return change
        turn = self._ensure_assistant()

        for item in message.content:
            if not isinstance(item, ToolUseContent) or not item.id:
                continue
            block = turn.find_tool(item.id)
            if block is None:
                block = ToolBlock(
                    id=item.id,
                    name=item.name,
                    input=dict(item.input),
                    streaming=False,
                )
                turn.blocks.append(block)
            else:
                block.name = item.name or block.name
                if item.input or not block.input:
                    block.input = dict(item.input)
                block.streaming = False
                self._detach(block)
            change.tools_ready.append(block)
            change.changed = True

        snapshot_text = "".join(
            item.text for item in message.content if isinstance(item, TextContent)
        )
        if snapshot_text.strip() and self._merge_snapshot_text(turn, message.message_id, snapshot_text):
            change.changed = True
        return change

    def _detach(self, block: ToolBlock) -> None:
        """Drop stream buffers that still point at *block*."""
        for index in [i for i, b in self._open.items() if b is block]:
            self._open.pop(index, None)
            self._buffers.pop(index, None)

    def _streamed_text_for(self, message_id: str | None) -> list[TextBlock]:
        blocks = self._segments.get(message_id)
        if blocks is None and message_id is not None and self._segment_id is None:
            # Stream carried no message ids; assume the live segment.
            blocks = self._segments.get(None)
        return [b for b in blocks or [] if isinstance(b, TextBlock)]

    def _merge_snapshot_text(
        self, turn: Turn, message_id: str | None, snapshot_text: str
    ) -> bool:
        streamed = self._streamed_text_for(message_id)
        streamed_text = "".join(b.text for b in streamed)
        if streamed_text:
            if snapshot_text == streamed_text or not snapshot_text.startswith(streamed_text):
                # Identical, or the channels disagree: the stream got there first.
                return False
            streamed[-1].text += snapshot_text[len(streamed_text):]
            return True
        if any(b.text == snapshot_text for b in turn.text_blocks()):
            return False
        block = TextBlock(text=snapshot_text)
        turn.blocks.append(block)
        self._segments.setdefault(message_id, []).append(block)
        return True

    # ── Tool results ──

    def _apply_tool_results(self, message: UserMessage) -> TranscriptChange:
        change = TranscriptChange()
        for item in message.content:
            if not isinstance(item, ToolResultContent):
                continue
            block = self.find_tool(item.tool_use_id)
            if block is None:
                logger.warning(
                    "Dropping tool_result for unknown tool id %s", item.tool_use_id[:12]
                )
                continue
            content = item.content
            if item.is_error and not content:
                content = "Tool error"
            block.set_result(content, is_error=item.is_error)
            self._detach(block)
            change.tools_finished.append(block)
            change.changed = True
        return change

    # ── Channel 3: final result ──

    def _apply_result(self, message: ResultMessage) -> TranscriptChange:
        change = TranscriptChange(turn_ended=True)
        text = message.result
        if message.is_error and not text.strip() and message.errors:
            text = "\n".join(message.errors)
        if self._assistant is None and not text.strip():
            self.end_turn()
            return change

        change.changed = True
        turn = self._ensure_assistant()
        turn.is_error = message.is_error
        turn.duration_ms = message.duration_ms
        turn.cost_usd = message.total_cost_usd
        if text.strip() and not turn.has_text:
            turn.blocks.append(TextBlock(text=text))
        self.end_turn()
        return change
