"""Tests for the per-backend output pipelines."""
from __future__ import annotations

import json

from agentlink.engine.events import MessageStop
from agentlink.engine.pipeline import PlainTextPipeline, StreamJsonPipeline
from agentlink.engine.reconciler import SessionCaptured, StreamDiagnostic
from agentlink.shared.models.message import MessageRole, TranscriptEntry

TURN = "\n".join(json.dumps(obj) for obj in [
    {"type": "system", "subtype": "init", "session_id": "sess-1", "model": "claude-test"},
    {"type": "stream_event", "event": {
        "type": "message_start", "message": {"id": "m1", "usage": {"input_tokens": 5}}}},
    {"type": "stream_event", "event": {
        "type": "content_block_start", "index": 0, "content_block": {"type": "text"}}},
    {"type": "stream_event", "event": {
        "type": "content_block_delta", "index": 0,
        "delta": {"type": "text_delta", "text": "Hello {world}"}}},
    {"type": "stream_event", "event": {"type": "message_stop"}},
    {"type": "result", "subtype": "success", "total_cost_usd": 0.5},
]) + "\n"


def _entries(outputs) -> list[TranscriptEntry]:
    return [o for o in outputs if isinstance(o, TranscriptEntry)]


def _summary(outputs) -> list[tuple]:
    summary = []
    for o in outputs:
        if isinstance(o, TranscriptEntry):
            summary.append((o.role.value, o.content, o.is_partial))
        else:
            summary.append((type(o).__name__,))
    return summary


def test_chunking_does_not_change_outputs():
    whole = StreamJsonPipeline().feed(TURN)

    for size in (1, 3, 7, 64):
        pipeline = StreamJsonPipeline()
        outputs = []
        for start in range(0, len(TURN), size):
            outputs.extend(pipeline.feed(TURN[start:start + size]))
        assert _summary(outputs) == _summary(whole), f"chunk size {size}"


def test_full_turn_outputs():
    outputs = StreamJsonPipeline().feed("Loading credentials...\n" + TURN)
    assert outputs[0] == SessionCaptured(resume_id="sess-1", model="claude-test")
    assert _summary(outputs[1:]) == [
        ("system", "Session initialized. Model: claude-test", False),
        ("assistant", "Hello {world}", True),
        ("assistant", "Hello {world}", False),
        ("system", "Completed. Cost: $0.5000", False),
    ]


def test_parse_failure_is_reported_and_stream_continues():
    pipeline = StreamJsonPipeline()
    outputs = pipeline.feed('{bad json}\n{"type":"error","error":{"message":"late"}}\n')
    assert isinstance(outputs[0], StreamDiagnostic)
    assert outputs[0].kind == "parse_failure"
    assert outputs[0].raw == "{bad json}"
    assert _entries(outputs)[0].content == "Error: late"


def test_noise_overflow_is_reported():
    pipeline = StreamJsonPipeline(noise_ceiling=50)
    outputs = pipeline.feed("z" * 80)
    assert len(outputs) == 1
    assert outputs[0].kind == "buffer_overflow"
    assert "80" in outputs[0].message


def test_user_echo_suppression_is_configurable():
    line = '{"type":"user","message":{"role":"user","content":"hello"}}\n'
    assert StreamJsonPipeline(suppress_user_echo=True).feed(line) == []
    echoed = StreamJsonPipeline(suppress_user_echo=False).feed(line)
    assert echoed[0].role == MessageRole.USER


def test_finish_flushes_pending_text():
    pipeline = StreamJsonPipeline()
    pipeline.feed(TURN.split('{"type": "stream_event", "event": {"type": "message_stop"}}')[0])
    outputs = pipeline.finish(0)
    assert _summary(outputs) == [("assistant", "Hello {world}", False)]


def test_nonzero_exit_without_result_is_an_error_entry():
    pipeline = StreamJsonPipeline()
    outputs = pipeline.finish(2, "warning: x\nfatal: nope\n")
    entries = _entries(outputs)
    assert len(entries) == 1
    assert entries[0].role == MessageRole.SYSTEM
    assert entries[0].is_error
    assert entries[0].content == "Process exited with code 2: fatal: nope"


def test_nonzero_exit_after_result_adds_nothing():
    pipeline = StreamJsonPipeline()
    pipeline.feed('{"type":"result","subtype":"success","total_cost_usd":0}\n')
    assert pipeline.finish(1) == []


def test_finish_reports_incomplete_object():
    pipeline = StreamJsonPipeline()
    pipeline.feed('{"type":"message_st')
    outputs = pipeline.finish(0)
    assert [o.kind for o in outputs if isinstance(o, StreamDiagnostic)] == ["incomplete_output"]
    assert pipeline.buffer.remainder() == ""


def test_reset_drops_in_flight_turn():
    pipeline = StreamJsonPipeline()
    pipeline.feed(TURN.split('{"type": "stream_event", "event": {"type": "message_stop"}}')[0])
    pipeline.discard()
    assert pipeline.finish(0) == []


def test_plain_text_streams_one_message():
    pipeline = PlainTextPipeline()
    first = pipeline.feed("Hello \x1b[1mworld\x1b[0m")
    second = pipeline.feed("!\r\n")
    assert first[0].content == "Hello world"
    assert second[0].content == "Hello world!\n"
    assert first[0].id == second[0].id
    assert first[0].is_partial and second[0].is_partial

    final = pipeline.finish(0)
    assert len(final) == 1
    assert final[0].id == first[0].id
    assert final[0].content == "Hello world!\n"
    assert not final[0].is_partial


def test_plain_text_nonzero_exit():
    pipeline = PlainTextPipeline()
    pipeline.feed("partial answer")
    outputs = pipeline.finish(1, "quota exceeded\n")
    assert [e.content for e in outputs] == [
        "partial answer",
        "Process exited with code 1: quota exceeded",
    ]


def test_plain_text_discard():
    pipeline = PlainTextPipeline()
    pipeline.feed("abc")
    pipeline.discard()
    assert pipeline.finish(0) == []
    assert pipeline.feed("\x1b[0m") == []


def test_stray_brace_in_prose_does_not_hide_the_turn():
    outputs = StreamJsonPipeline(noise_ceiling=50).feed("warning: unterminated {\n" + TURN)
    assert isinstance(outputs[0], StreamDiagnostic)
    assert outputs[0].kind == "buffer_overflow"
    assert outputs[0].raw == "warning: unterminated {\n"
    assert outputs[1] == SessionCaptured(resume_id="sess-1", model="claude-test")
    assert _entries(outputs)[-1].content == "Completed. Cost: $0.5000"


def test_reconciler_failure_is_reported_and_stream_continues():
    pipeline = StreamJsonPipeline()

    def broken(event):
        raise RuntimeError("bad state")

    pipeline.reconciler._handlers[MessageStop] = broken
    outputs = pipeline.feed(TURN)

    diagnostics = [o for o in outputs if isinstance(o, StreamDiagnostic)]
    assert [d.kind for d in diagnostics] == ["reconciler_error"]
    assert diagnostics[0].message == "MessageStop: RuntimeError: bad state"
    assert _entries(outputs)[-1].content == "Completed. Cost: $0.5000"
