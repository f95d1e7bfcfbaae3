"""Tests for stream-json event classification."""
from __future__ import annotations

import json

import pytest

from agentlink.engine.events import (
    AssistantMessage,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    ErrorEvent,
    MessageDelta,
    MessageStart,
    MessageStop,
    ParseFailure,
    SessionInit,
    ToolResult,
    ToolUse,
    TurnResult,
    UnknownEvent,
    UserMessage,
    classify,
    strip_ansi,
)


def _c(obj: dict):
    return classify(json.dumps(obj))


def test_system_init_becomes_session_init():
    event = _c({
        "type": "system", "subtype": "init",
        "session_id": "abc", "model": "claude-test", "tools": ["Read", "Bash"],
    })
    assert event == SessionInit(resume_id="abc", model="claude-test", tools=("Read", "Bash"))


def test_other_system_subtypes_are_unknown():
    event = _c({"type": "system", "subtype": "compact_boundary"})
    assert event == UnknownEvent(type_name="system", subtype="compact_boundary")


def test_message_start_carries_id_and_usage():
    event = _c({
        "type": "message_start",
        "message": {"id": "m1", "usage": {"input_tokens": 10, "output_tokens": 0}},
    })
    assert isinstance(event, MessageStart)
    assert event.message_id == "m1"
    assert event.initial_usage.input_tokens == 10
    assert event.initial_usage.cache_read_input_tokens is None


def test_stream_event_envelope_is_unwrapped():
    event = _c({
        "type": "stream_event",
        "session_id": "abc",
        "event": {
            "type": "content_block_delta", "index": 1,
            "delta": {"type": "text_delta", "text": "hi"},
        },
    })
    assert event == ContentBlockDelta(index=1, text_delta="hi")


def test_tool_use_block_start():
    event = _c({
        "type": "content_block_start", "index": 2,
        "content_block": {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {}},
    })
    assert event == ContentBlockStart(
        index=2, kind="tool_use", tool_id="toolu_1", tool_name="Read", initial_input={},
    )


def test_thinking_and_input_json_deltas():
    thinking = _c({
        "type": "content_block_delta", "index": 0,
        "delta": {"type": "thinking_delta", "thinking": "hmm"},
    })
    assert thinking == ContentBlockDelta(index=0, text_delta="hmm")

    partial = _c({
        "type": "content_block_delta", "index": 1,
        "delta": {"type": "input_json_delta", "partial_json": '{"pa'},
    })
    assert partial == ContentBlockDelta(index=1, partial_json_delta='{"pa')


def test_block_stop():
    assert _c({"type": "content_block_stop", "index": 3}) == ContentBlockStop(index=3)


def test_message_delta_reads_usage_beside_delta():
    event = _c({
        "type": "message_delta",
        "delta": {"stop_reason": "end_turn"},
        "usage": {"output_tokens": 7},
    })
    assert isinstance(event, MessageDelta)
    assert event.stop_reason == "end_turn"
    assert event.usage_delta.output_tokens == 7


def test_message_stop_without_message():
    assert _c({"type": "message_stop"}) == MessageStop()


def test_successful_result_with_total_cost():
    event = _c({
        "type": "result", "subtype": "success",
        "total_cost_usd": 0.0123, "result": "done",
    })
    assert event == TurnResult(status="success", cost_usd=0.0123, result_text="done")


def test_error_result_from_subtype():
    event = _c({"type": "result", "subtype": "error_max_turns", "is_error": True})
    assert isinstance(event, TurnResult)
    assert event.status == "error"
    assert event.error_text == "error_max_turns"


def test_error_event():
    event = _c({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}})
    assert event == ErrorEvent(kind="overloaded_error", message="busy")


def test_user_message_with_tool_results():
    event = _c({
        "type": "user",
        "message": {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "t1", "content": "ok"},
            {"type": "tool_result", "tool_use_id": "t2",
             "content": [{"type": "text", "text": "line"}], "is_error": True},
        ]},
    })
    assert event == UserMessage(
        text="",
        tool_results=(
            ToolResult(tool_id="t1", content="ok"),
            ToolResult(tool_id="t2", content="line", is_error=True),
        ),
    )


def test_user_message_plain_text():
    event = _c({"type": "user", "message": {"role": "user", "content": "hello"}})
    assert event == UserMessage(text="hello")


def test_whole_assistant_message():
    event = _c({
        "type": "assistant",
        "message": {"id": "m9", "content": [
            {"type": "text", "text": "Let me look."},
            {"type": "tool_use", "id": "toolu_9", "name": "Grep", "input": {"pattern": "x"}},
        ]},
    })
    assert isinstance(event, AssistantMessage)
    assert event.message_id == "m9"
    assert event.text == "Let me look."
    assert event.tool_uses == (
        ToolUse(tool_id="toolu_9", tool_name="Grep", tool_input={"pattern": "x"}),
    )


def test_top_level_tool_use():
    event = _c({"type": "tool_use", "tool_use_id": "t5", "tool_name": "Bash",
                "tool_input": {"command": "ls"}})
    assert event == ToolUse(tool_id="t5", tool_name="Bash", tool_input={"command": "ls"})


def test_unrecognized_type_is_unknown_event():
    assert _c({"type": "ping"}) == UnknownEvent(type_name="ping")


def test_ansi_codes_are_stripped_on_retry():
    text = '{"type":"message_stop"\x1b[0m}'
    assert classify(text) == MessageStop()


def test_ansi_inside_string_is_recovered():
    text = '{"type":"\x1b[32mmessage_stop\x1b[0m"}'
    assert classify(text) == MessageStop()


@pytest.mark.parametrize("text", [
    "{",
    "{}",
    '{"type": 5}',
    '{"type":"content_block_delta","delta":"x"}',
    '{"type":"content_block_start","index":"abc"}',
    '{"type":"tool_result"}',
    "{not json}",
])
def test_malformed_objects_become_parse_failures(text):
    event = classify(text)
    assert isinstance(event, ParseFailure)
    assert event.raw == text
    assert event.error


def test_parse_failure_reports_both_attempts():
    event = classify('{"type":\x1b[1m}')
    assert isinstance(event, ParseFailure)
    assert event.error.startswith("JSONDecodeError")
    assert event.retry_error is not None
    assert event.retry_error.startswith("JSONDecodeError")


def test_strip_ansi_removes_csi_and_osc():
    assert strip_ansi("\x1b]0;title\x07\x1b[1;31mred\x1b[0m") == "red"


@pytest.mark.parametrize("text", [
    '{"type":"content_block_stop","index":1e999}',
    '{"type":"content_block_delta","index":-Infinity,"delta":{"text":"x"}}',
    '{"type":"content_block_start","index":NaN,"content_block":{"type":"text"}}',
    '{"type":"message_start","message":{"id":{"x":1}}}',
    '{"type":"message_stop","message":{"id":["m1"]}}',
    '{"type":"assistant","message":{"id":7,"content":[]}}',
    '{"type":"system","subtype":"init","session_id":12345}',
    '{"type":"system","subtype":"init","session_id":"s","model":["m"]}',
    '{"type":"content_block_start","index":0,"content_block":{"type":"tool_use","id":{"a":1},"name":"Bash"}}',
    '{"type":"tool_use","tool_use_id":3,"tool_name":"Bash"}',
])
def test_valid_json_with_wrong_field_types_becomes_parse_failure(text):
    event = classify(text)
    assert isinstance(event, ParseFailure)
    assert event.raw == text


def test_deeply_nested_json_becomes_parse_failure():
    text = '{"type":"user","message":' + "[" * 100_000 + "]" * 100_000 + "}"
    event = classify(text)
    assert isinstance(event, ParseFailure)


def test_infinite_usage_counts_are_ignored():
    event = classify(
        '{"type":"message_start","message":{"id":"m1","usage":{"input_tokens":1e999,"output_tokens":2}}}'
    )
    assert isinstance(event, MessageStart)
    assert event.message_id == "m1"
    assert event.initial_usage.input_tokens == 0
    assert event.initial_usage.output_tokens == 2


def test_non_string_subtype_is_dropped():
    assert _c({"type": "system", "subtype": 5}) == UnknownEvent(type_name="system", subtype=None)
    assert _c({"type": "ping", "subtype": {"a": 1}}) == UnknownEvent(type_name="ping", subtype=None)
