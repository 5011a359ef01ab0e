"""Tests for the line-delimited chat stream decoder."""

from __future__ import annotations

import pytest

from cropwise.ai.stream_protocol import (
    FrameDecoder,
    FrameKind,
    StepEnd,
    StepStart,
    StreamComplete,
    TextDelta,
    ToolArgsComplete,
    ToolArgsDelta,
    ToolCallStart,
    ToolResult,
    build_frame,
    encode_frame,
)


def _feed_all(decoder: FrameDecoder, chunks: list[str]) -> list:
    frames = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    return frames


def test_decodes_every_known_prefix() -> None:
    body = (
        'f:{"messageId":"m1"}\n'
        'b:{"toolCallId":"t1","toolName":"weather"}\n'
        'c:{"toolCallId":"t1","argsTextDelta":"{\\"ci"}\n'
        '9:{"toolCallId":"t1","args":{"city":"Pune"}}\n'
        'a:{"toolCallId":"t1","result":{"temp":30}}\n'
        '0:"Sunny today"\n'
        'e:{"finishReason":"tool-calls"}\n'
        'd:{"finishReason":"stop"}\n'
    )

    frames = FrameDecoder().feed(body)

    assert frames == [
        StepStart("m1"),
        ToolCallStart("t1", "weather"),
        ToolArgsDelta("t1", '{"ci'),
        ToolArgsComplete("t1", {"city": "Pune"}),
        ToolResult("t1", {"temp": 30}),
        TextDelta("Sunny today"),
        StepEnd("tool-calls"),
        StreamComplete("stop"),
    ]


def test_line_split_across_chunks_is_reassembled() -> None:
    decoder = FrameDecoder()

    first = decoder.feed('0:"Hel')
    assert first == []
    assert decoder.pending == '0:"Hel'

    second = decoder.feed('lo"\n0:" world"\n')
    assert second == [TextDelta("Hello"), TextDelta(" world")]
    assert decoder.pending == ""


def test_chunking_does_not_change_decoded_frames() -> None:
    body = 'b:{"toolCallId":"t1","toolName":"soil"}\n0:"ok"\nd:{"finishReason":"stop"}\n'
    whole = FrameDecoder().feed(body)
    per_char = _feed_all(FrameDecoder(), list(body))
    assert per_char == whole


def test_malformed_middle_line_is_skipped() -> None:
    decoder = FrameDecoder()

    frames = decoder.feed('0:"first"\n0:{not json\n0:"second"\n')

    assert frames == [TextDelta("first"), TextDelta("second")]
    assert decoder.skipped_lines == 1


def test_unknown_prefix_and_blank_lines_are_ignored() -> None:
    decoder = FrameDecoder()

    frames = decoder.feed('\n2:[{"data":1}]\n\n0:"kept"\n')

    assert frames == [TextDelta("kept")]
    assert decoder.skipped_lines == 0


def test_line_without_prefix_counts_as_skipped() -> None:
    decoder = FrameDecoder()

    assert decoder.feed("garbage\n") == []
    assert decoder.skipped_lines == 1


def test_flush_decodes_final_line_without_newline() -> None:
    decoder = FrameDecoder()
    decoder.feed('0:"a"\nd:{"finishReason":"stop"}')

    assert decoder.flush() == [StreamComplete("stop")]
    assert decoder.pending == ""
    assert decoder.flush() == []


def test_reset_drops_buffer_and_counters() -> None:
    decoder = FrameDecoder()
    decoder.feed("bad\n0:\"part")
    decoder.reset()

    assert decoder.pending == ""
    assert decoder.skipped_lines == 0


@pytest.mark.parametrize(
    ("kind", "payload"),
    [
        (FrameKind.TOOL_CALL_START, {"toolCallId": "t1"}),
        (FrameKind.TOOL_ARGS_COMPLETE, {"toolCallId": "t1", "args": "city=Pune"}),
        (FrameKind.TOOL_RESULT, {"toolCallId": "t1"}),
        (FrameKind.TEXT_DELTA, {"text": "not a string"}),
        (FrameKind.STEP_START, ["m1"]),
    ],
)
def test_build_frame_rejects_payloads_missing_required_fields(kind: FrameKind, payload: object) -> None:
    assert build_frame(kind, payload) is None


def test_missing_finish_reason_defaults_to_unknown() -> None:
    assert build_frame(FrameKind.STREAM_COMPLETE, {}) == StreamComplete("unknown")


def test_encode_frame_writes_wire_line() -> None:
    line = encode_frame(ToolCallStart("t9", "market_price"))

    assert line == 'b:{"toolCallId": "t9", "toolName": "market_price"}\n'
    assert FrameDecoder().feed(line) == [ToolCallStart("t9", "market_price")]


def test_encode_frame_keeps_unicode_text() -> None:
    assert encode_frame(TextDelta("धान")) == '0:"धान"\n'
