from __future__ import annotations

import json

import pytest

from agentlink.engine.errors import ProtocolError
from agentlink.engine.protocol import (
    AssistantMessage,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageStart,
    MessageStop,
    ResultMessage,
    StreamEventMessage,
    SystemMessage,
    TextContent,
    TextDelta,
    ToolResultContent,
    ToolUseContent,
    UserMessage,
    decode_message,
    encode_tool_result,
    encode_user_message,
)


def test_decode_system_init() -> None:
    msg = decode_message(json.dumps({
        "type": "system", "subtype": "init", "session_id": "abc",
        "model": "sonnet", "tools": ["Read", "Write"],
    }))
    assert msg == SystemMessage(subtype="init", session_id="abc", model="sonnet", tools=["Read", "Write"])


def test_decode_assistant_snapshot_skips_unknown_blocks() -> None:
    msg = decode_message(json.dumps({
        "type": "assistant",
        "message": {
            "id": "msg_1",
            "content": [
                {"type": "thinking", "thinking": "..."},
                {"type": "text", "text": "Hello"},
                {"type": "tool_use", "id": "t1", "name": "Write", "input": {"file_path": "a.txt"}},
            ],
        },
    }))
    assert isinstance(msg, AssistantMessage)
    assert msg.message_id == "msg_1"
    assert msg.content == [
        TextContent(text="Hello"),
        ToolUseContent(id="t1", name="Write", input={"file_path": "a.txt"}),
    ]


def test_decode_tool_result_flattens_text_parts() -> None:
    msg = decode_message(json.dumps({
        "type": "user",
        "message": {"content": [{
            "type": "tool_result", "tool_use_id": "t1", "is_error": True,
            "content": [{"type": "text", "text": "line one"}, {"type": "text", "text": "line two"}],
        }]},
    }))
    assert isinstance(msg, UserMessage)
    assert msg.content == [ToolResultContent(tool_use_id="t1", content="line one\nline two", is_error=True)]


def test_decode_stream_events() -> None:
    def event(raw: dict) -> object:
        msg = decode_message(json.dumps({"type": "stream_event", "event": raw}))
        assert isinstance(msg, StreamEventMessage)
        return msg.event

    assert event({"type": "message_start", "message": {"id": "m1"}}) == MessageStart(message_id="m1")
    start = event({"type": "content_block_start", "index": 1,
                   "content_block": {"type": "tool_use", "id": "t1", "name": "Bash", "input": {}}})
    assert start == ContentBlockStart(index=1, block=ToolUseContent(id="t1", name="Bash", input={}))
    assert event({"type": "content_block_delta", "index": 0,
                  "delta": {"type": "text_delta", "text": "Hi"}}) == ContentBlockDelta(index=0, delta=TextDelta(text="Hi"))
    assert event({"type": "content_block_delta", "index": 1,
                  "delta": {"type": "input_json_delta", "partial_json": '{"co'}}) == ContentBlockDelta(
        index=1, delta=InputJsonDelta(partial_json='{"co'))
    assert event({"type": "content_block_stop", "index": 1}) == ContentBlockStop(index=1)
    assert event({"type": "message_stop"}) == MessageStop()


def test_decode_result_with_errors() -> None:
    msg = decode_message(json.dumps({
        "type": "result", "subtype": "error_during_execution", "is_error": True,
        "duration_ms": 1200, "total_cost_usd": 0.01, "errors": ["boom"],
    }))
    assert isinstance(msg, ResultMessage)
    assert msg.is_error is True
    assert msg.duration_ms == 1200
    assert msg.total_cost_usd == pytest.approx(0.01)
    assert msg.errors == ["boom"]
    assert msg.result == ""


def test_decode_nested_message_keeps_parent_id() -> None:
    msg = decode_message(json.dumps({
        "type": "assistant", "parent_tool_use_id": "task-1",
        "message": {"content": [{"type": "text", "text": "sub"}]},
    }))
    assert isinstance(msg, AssistantMessage)
    assert msg.parent_tool_use_id == "task-1"


def test_unknown_type_decodes_to_none() -> None:
    assert decode_message('{"type": "keep_alive"}') is None


@pytest.mark.parametrize("line", ["not json", "[1, 2]", '"text"'])
def test_malformed_line_raises_protocol_error(line: str) -> None:
    with pytest.raises(ProtocolError):
        decode_message(line)


def test_encode_user_message_is_one_terminated_record() -> None:
    record = encode_user_message("fix it", "sess-1")
    assert record.endswith("\n")
    assert record.count("\n") == 1
    data = json.loads(record)
    assert data == {
        "type": "user",
        "session_id": "sess-1",
        "message": {"role": "user", "content": "fix it"},
        "parent_tool_use_id": None,
    }


def test_encode_user_message_escapes_newlines_in_text() -> None:
    record = encode_user_message("line one\nline two")
    assert record.count("\n") == 1
    assert json.loads(record)["session_id"] == "default"


def test_encode_tool_result() -> None:
    data = json.loads(encode_tool_result("t9", "yes", "s", is_error=True))
    assert data["message"]["content"] == [
        {"type": "tool_result", "tool_use_id": "t9", "content": "yes", "is_error": True}
    ]
