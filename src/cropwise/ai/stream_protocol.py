"""Incremental decoder for the line-delimited ``prefix:JSON`` chat stream.

Each line of the response body carries one frame::

    b:{"toolCallId":"t1","toolName":"weather"}
    0:"Sunny today"
    d:{"finishReason":"stop"}

The transport may split a line across chunks, so :class:`FrameDecoder`
keeps the trailing partial line until its newline arrives.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Union

LOGGER = logging.getLogger(__name__)


class FrameKind(str, Enum):
    """Wire prefixes understood by the decoder."""

    STEP_START = "f"
    TOOL_CALL_START = "b"
    TOOL_ARGS_DELTA = "c"
    TOOL_ARGS_COMPLETE = "9"
    TOOL_RESULT = "a"
    TEXT_DELTA = "0"
    STEP_END = "e"
    STREAM_COMPLETE = "d"

    @classmethod
    def from_prefix(cls, prefix: str) -> "FrameKind | None":
        try:
            return cls(prefix)
        except ValueError:
            return None


@dataclass(frozen=True, slots=True)
class StepStart:
    message_id: str


@dataclass(frozen=True, slots=True)
class ToolCallStart:
    tool_call_id: str
    tool_name: str


@dataclass(frozen=True, slots=True)
class ToolArgsDelta:
    tool_call_id: str
    args_text_delta: str


@dataclass(frozen=True, slots=True)
class ToolArgsComplete:
    tool_call_id: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResult:
    tool_call_id: str
    result: Any = None


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class StepEnd:
    finish_reason: str


@dataclass(frozen=True, slots=True)
class StreamComplete:
    finish_reason: str


Frame = Union[
    StepStart,
    ToolCallStart,
    ToolArgsDelta,
    ToolArgsComplete,
    ToolResult,
    TextDelta,
    StepEnd,
    StreamComplete,
]


class FrameDecoder:
    """Turns raw text chunks into typed frames.

    The decoder performs no I/O and never raises for malformed input: a line
    without a prefix, with unparsable JSON, with an unknown prefix or with a
    payload missing required fields is logged at DEBUG and skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._skipped = 0

    @property
    def pending(self) -> str:
        """Return the carry-over text still waiting for its newline."""

        return self._buffer

    @property
    def skipped_lines(self) -> int:
        return self._skipped

    def feed(self, chunk: str) -> list[Frame]:
        if not chunk:
            return []
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def flush(self) -> list[Frame]:
        """Decode whatever is left in the buffer once the transport closes."""

        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return self._decode_lines([remainder])

    def reset(self) -> None:
        self._buffer = ""
        self._skipped = 0

    def _decode_lines(self, lines: Iterable[str]) -> list[Frame]:
        frames: list[Frame] = []
        for line in lines:
            frame = self._decode_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def _decode_line(self, raw_line: str) -> Frame | None:
        line = raw_line.strip()
        if not line:
            return None
        prefix, sep, payload_text = line.partition(":")
        if not sep or not prefix:
            self._skip(line, "missing prefix")
            return None
        kind = FrameKind.from_prefix(prefix)
        if kind is None:
            LOGGER.debug("Ignoring frame with unknown prefix %r", prefix)
            return None
        try:
            payload = json.loads(payload_text)
        except json.JSONDecodeError as exc:
            self._skip(line, f"invalid JSON ({exc.msg})")
            return None
        frame = build_frame(kind, payload)
        if frame is None:
            self._skip(line, f"unexpected payload for {kind.name}")
        return frame

    def _skip(self, line: str, reason: str) -> None:
        self._skipped += 1
        preview = line if len(line) <= 120 else f"{line[:117]}..."
        LOGGER.debug("Skipping stream line (%s): %s", reason, preview)


def build_frame(kind: FrameKind, payload: Any) -> Frame | None:
    """Return the frame for *kind* or ``None`` when *payload* does not fit."""

    if kind is FrameKind.TEXT_DELTA:
        return TextDelta(payload) if isinstance(payload, str) else None
    if not isinstance(payload, Mapping):
        return None

    if kind is FrameKind.STEP_START:
        message_id = _string_field(payload, "messageId")
        return StepStart(message_id) if message_id else None
    if kind is FrameKind.TOOL_CALL_START:
        call_id = _string_field(payload, "toolCallId")
        name = _string_field(payload, "toolName")
        if not call_id or not name:
            return None
        return ToolCallStart(call_id, name)
    if kind is FrameKind.TOOL_ARGS_DELTA:
        call_id = _string_field(payload, "toolCallId")
        delta = payload.get("argsTextDelta")
        if not call_id or not isinstance(delta, str):
            return None
        return ToolArgsDelta(call_id, delta)
    if kind is FrameKind.TOOL_ARGS_COMPLETE:
        call_id = _string_field(payload, "toolCallId")
        args = payload.get("args")
        if not call_id or not isinstance(args, Mapping):
            return None
        return ToolArgsComplete(call_id, dict(args))
    if kind is FrameKind.TOOL_RESULT:
        call_id = _string_field(payload, "toolCallId")
        if not call_id or "result" not in payload:
            return None
        return ToolResult(call_id, payload["result"])
    if kind is FrameKind.STEP_END:
        return StepEnd(_string_field(payload, "finishReason") or "unknown")
    if kind is FrameKind.STREAM_COMPLETE:
        return StreamComplete(_string_field(payload, "finishReason") or "unknown")
    return None


def encode_frame(frame: Frame) -> str:
    """Serialize *frame* back to its wire line (newline included)."""

    match frame:
        case StepStart(message_id=message_id):
            kind, payload = FrameKind.STEP_START, {"messageId": message_id}
        case ToolCallStart(tool_call_id=call_id, tool_name=name):
            kind, payload = FrameKind.TOOL_CALL_START, {"toolCallId": call_id, "toolName": name}
        case ToolArgsDelta(tool_call_id=call_id, args_text_delta=delta):
            kind, payload = FrameKind.TOOL_ARGS_DELTA, {"toolCallId": call_id, "argsTextDelta": delta}
        case ToolArgsComplete(tool_call_id=call_id, args=args):
            kind, payload = FrameKind.TOOL_ARGS_COMPLETE, {"toolCallId": call_id, "args": args}
        case ToolResult(tool_call_id=call_id, result=result):
            kind, payload = FrameKind.TOOL_RESULT, {"toolCallId": call_id, "result": result}
        case TextDelta(text=text):
            kind, payload = FrameKind.TEXT_DELTA, text
        case StepEnd(finish_reason=reason):
            kind, payload = FrameKind.STEP_END, {"finishReason": reason}
        case StreamComplete(finish_reason=reason):
            kind, payload = FrameKind.STREAM_COMPLETE, {"finishReason": reason}
        case _:
            raise TypeError(f"Unsupported frame type: {type(frame).__name__}")
    return f"{kind.value}:{json.dumps(payload, ensure_ascii=False)}\n"


def _string_field(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


__all__ = [
    "FrameKind",
    "Frame",
    "FrameDecoder",
    "StepStart",
    "ToolCallStart",
    "ToolArgsDelta",
    "ToolArgsComplete",
    "ToolResult",
    "TextDelta",
    "StepEnd",
    "StreamComplete",
    "build_frame",
    "encode_frame",
]
