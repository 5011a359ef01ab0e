"""Accumulates decoded frames into a finished assistant message."""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional, assert_never

from ...chat.message_model import (
    ChatMessage,
    MessagePart,
    RequestStatus,
    StreamingState,
    ToolCallStatus,
)
from ..stream_protocol import (
    Frame,
    StepEnd,
    StepStart,
    StreamComplete,
    TextDelta,
    ToolArgsComplete,
    ToolArgsDelta,
    ToolCallStart,
    ToolResult,
)
from .tool_tracker import ToolInvocationTracker

LOGGER = logging.getLogger(__name__)

StateListener = Callable[[StreamingState], None]

CONNECTING_LABEL = "Connecting..."
GENERATING_LABEL = "Generating response..."
COMPLETE_LABEL = "Complete!"


def _new_message_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class MessageAssembler:
    """Drives ``request_status`` and owns the accumulated response text.

    One assembler serves one request at a time; :meth:`begin` resets it for
    the next turn. :meth:`finish` always returns the state to idle, whether
    or not a ``StreamComplete`` frame was received.
    """

    def __init__(
        self,
        *,
        tracker: ToolInvocationTracker | None = None,
        on_change: Optional[StateListener] = None,
    ) -> None:
        self._tracker = tracker or ToolInvocationTracker()
        self._on_change = on_change
        self._state = StreamingState()
        self._chunks: list[str] = []
        self._saw_frame = False
        self._completed = False
        self._finish_reason: str | None = None

    @property
    def state(self) -> StreamingState:
        return self._state

    @property
    def tracker(self) -> ToolInvocationTracker:
        return self._tracker

    @property
    def progress_percent(self) -> int:
        return self._tracker.progress_percent

    @property
    def completed(self) -> bool:
        """True once a ``StreamComplete`` frame has been applied."""

        return self._completed

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    def begin(self) -> None:
        self._tracker.reset()
        self._chunks.clear()
        self._saw_frame = False
        self._completed = False
        self._finish_reason = None
        self._state = StreamingState(
            current_step=CONNECTING_LABEL,
            tool_calls=[],
            final_response="",
            request_status=RequestStatus.SUBMITTED,
        )
        self._notify()

    def apply(self, frame: Frame) -> None:
        if not self._saw_frame:
            self._saw_frame = True
            self._state.request_status = RequestStatus.STREAMING

        match frame:
            case StepStart():
                self._state.current_step = f"Step: {frame.message_id}"
            case ToolCallStart() | ToolArgsDelta() | ToolArgsComplete() | ToolResult():
                label = self._tracker.apply(frame)
                if label:
                    self._state.current_step = label
                self._state.tool_calls = self._tracker.snapshot()
            case TextDelta():
                self._chunks.append(frame.text)
                self._state.final_response = "".join(self._chunks)
                self._state.current_step = GENERATING_LABEL
            case StepEnd():
                self._state.current_step = f"Step finished: {frame.finish_reason}"
            case StreamComplete():
                self._completed = True
                self._finish_reason = frame.finish_reason
                self._state.current_step = COMPLETE_LABEL
                self._state.request_status = RequestStatus.IDLE
            case _:
                assert_never(frame)
        self._notify()

    def finish(self) -> ChatMessage | None:
        """Finalize the turn once the transport has closed."""

        if not self._completed:
            LOGGER.debug("Stream closed without completion frame; finalizing anyway")
            dangling = self._tracker.mark_unfinished(ToolCallStatus.ERROR)
            if dangling:
                LOGGER.warning(
                    "Stream ended with %d unfinished tool call(s): %s",
                    len(dangling),
                    ", ".join(call.name for call in dangling),
                )
        self._state.tool_calls = self._tracker.snapshot()
        self._state.request_status = RequestStatus.IDLE
        self._notify()
        return self.build_message()

    def fail(self, error: BaseException | str) -> ChatMessage:
        """Mark the request failed and return the synthetic error message."""

        if isinstance(error, BaseException):
            text = str(error) or type(error).__name__
        else:
            text = str(error)
        self._tracker.mark_unfinished(ToolCallStatus.ERROR)
        self._state.tool_calls = self._tracker.snapshot()
        self._state.request_status = RequestStatus.ERROR
        self._notify()
        content = f"Error: {text or 'Unknown error'}"
        return ChatMessage(
            id=_new_message_id("error"),
            role="assistant",
            content=content,
            parts=[MessagePart.text_part(content)],
        )

    def build_message(self) -> ChatMessage | None:
        """Freeze the current text and tool calls into an assistant message."""

        final_response = self._state.final_response
        calls = self._tracker.snapshot()
        if not final_response and not calls:
            return None
        parts: list[MessagePart] = []
        for call in calls:
            parts.append(MessagePart.tool_call_part(call))
            if call.status is ToolCallStatus.COMPLETED:
                parts.append(MessagePart.tool_result_part(call))
        if final_response:
            parts.append(MessagePart.text_part(final_response))
        return ChatMessage(
            id=_new_message_id("assistant"),
            role="assistant",
            content=final_response,
            parts=parts,
        )

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self._state)
        except Exception:  # pragma: no cover - listeners must not break decoding
            LOGGER.debug("Streaming state listener failed", exc_info=True)


__all__ = ["MessageAssembler", "StateListener", "CONNECTING_LABEL", "GENERATING_LABEL", "COMPLETE_LABEL"]
