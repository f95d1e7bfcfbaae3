"""Tests for ChunkBuffer object extraction."""
from __future__ import annotations

import json

from agentlink.engine.extractor import ChunkBuffer

DELTA = json.dumps({
    "type": "content_block_delta",
    "index": 0,
    "delta": {"type": "text_delta", "text": "Hi {there}"},
})


def test_extracts_single_object_fed_whole():
    buf = ChunkBuffer()
    assert buf.feed(DELTA + "\n") == [DELTA]
    assert buf.remainder() == "\n"


def test_split_at_every_position_yields_same_object():
    for cut in range(1, len(DELTA)):
        buf = ChunkBuffer()
        out = buf.feed(DELTA[:cut]) + buf.feed(DELTA[cut:])
        assert out == [DELTA], f"split at {cut}"


def test_one_character_per_feed():
    buf = ChunkBuffer()
    out: list[str] = []
    for ch in DELTA + DELTA:
        out.extend(buf.feed(ch))
    assert out == [DELTA, DELTA]


def test_escaped_quote_and_brace_inside_string():
    obj = json.dumps({"type": "x", "text": 'a "{" b'})
    assert '\\"{\\"' in obj
    buf = ChunkBuffer()
    out = buf.feed(obj[:14]) + buf.feed(obj[14:])
    assert out == [obj]
    assert json.loads(out[0])["text"] == 'a "{" b'


def test_escaped_backslash_before_closing_quote():
    obj = json.dumps({"path": "C:\\dir\\", "next": "}"})
    buf = ChunkBuffer()
    assert buf.feed(obj) == [obj]


def test_prose_with_quotes_between_objects_is_ignored():
    buf = ChunkBuffer()
    out = buf.feed('Loading "config" from disk...\n{"a":1}\nok "bye\n{"b":2}')
    assert out == ['{"a":1}', '{"b":2}']


def test_stray_closing_brace_outside_object_is_ignored():
    buf = ChunkBuffer()
    assert buf.feed('} noise {"a":1}') == ['{"a":1}']


def test_incomplete_object_stays_buffered():
    buf = ChunkBuffer()
    assert buf.feed('{"a":1}{"b":') == ['{"a":1}']
    assert buf.remainder() == '{"b":'
    assert buf.feed("2}") == ['{"b":2}']


def test_noise_over_ceiling_is_discarded_and_recorded():
    buf = ChunkBuffer(noise_ceiling=100)
    assert buf.feed("x" * 150) == []
    overflow = buf.pop_overflow()
    assert overflow is not None
    assert overflow.discarded_chars == 150
    assert overflow.preview == "x" * 150
    assert buf.pop_overflow() is None
    assert buf.remainder() == ""
    assert buf.feed('{"a":1}') == ['{"a":1}']


def test_noise_under_ceiling_is_kept():
    buf = ChunkBuffer(noise_ceiling=100)
    assert buf.feed("x" * 50) == []
    assert buf.pop_overflow() is None
    assert buf.remainder() == "x" * 50


def test_open_object_is_not_cut_by_noise_ceiling():
    big = json.dumps({"text": "y" * 1000})
    buf = ChunkBuffer(noise_ceiling=100)
    assert buf.feed(big[:500]) == []
    assert buf.pop_overflow() is None
    assert buf.feed(big[500:]) == [big]


def test_noise_before_open_object_is_dropped():
    big = json.dumps({"text": "y" * 300})
    buf = ChunkBuffer(noise_ceiling=100)
    assert buf.feed("n" * 200 + big[:50]) == []
    overflow = buf.pop_overflow()
    assert overflow is not None
    assert overflow.discarded_chars == 200
    assert buf.feed(big[50:]) == [big]


def test_unterminated_object_over_max_size_is_discarded():
    buf = ChunkBuffer(noise_ceiling=10, max_object_chars=100)
    assert buf.feed('{"a":"' + "z" * 200) == []
    overflow = buf.pop_overflow()
    assert overflow is not None
    assert overflow.discarded_chars == 206
    assert buf.remainder() == ""
    assert buf.feed('{"b":1}') == ['{"b":1}']


def test_clear_resets_scan_state():
    buf = ChunkBuffer()
    buf.feed('{"a":"open string {')
    buf.clear()
    assert buf.remainder() == ""
    assert buf.feed('{"b":1}') == ['{"b":1}']


def test_stray_open_brace_in_prose_does_not_swallow_later_objects():
    buf = ChunkBuffer()
    stop = '{"type":"message_stop"}'
    out = buf.feed("warning: bad config {\n")
    for _ in range(500):
        out.extend(buf.feed(stop + "\n"))
    assert out == [stop] * 500
    overflow = buf.pop_overflow()
    assert overflow is not None
    assert overflow.preview == "warning: bad config {\n"
    assert len(buf.remainder()) < 100


def test_stray_open_brace_followed_by_prose_only_is_discarded():
    buf = ChunkBuffer(noise_ceiling=100)
    assert buf.feed("oops {\n") == []
    for _ in range(20):
        assert buf.feed("still just prose\n") == []
    assert buf.pop_overflow() is not None
    assert len(buf.remainder()) <= 100
    assert buf.feed('{"a":1}') == ['{"a":1}']


def test_stray_open_brace_recovers_object_split_across_feeds():
    buf = ChunkBuffer(noise_ceiling=50)
    obj = json.dumps({"type": "result", "text": "r" * 40})
    assert buf.feed("log line with { in it\n" + "x" * 40 + "\n" + obj[:20]) == []
    assert buf.feed(obj[20:] + "\n") == [obj]
