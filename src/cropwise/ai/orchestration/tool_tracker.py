"""Per-call lifecycle tracking for tool invocations inside one response."""

from __future__ import annotations

import logging
import math
from typing import Any

from ...chat.message_model import ToolCall, ToolCallStatus
from ..stream_protocol import ToolArgsComplete, ToolArgsDelta, ToolCallStart, ToolResult

LOGGER = logging.getLogger(__name__)

ToolFrame = ToolCallStart | ToolArgsDelta | ToolArgsComplete | ToolResult


class ToolInvocationTracker:
    """State machine keyed by tool-call id, driven by decoder frames.

    Calls are kept in ``ToolCallStart`` arrival order, which is also their
    display order. Status only ever moves forward: pending, executing, then
    completed or error.
    """

    def __init__(self) -> None:
        self._calls: list[ToolCall] = []
        self._index: dict[str, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def get(self, call_id: str) -> ToolCall | None:
        return self._index.get(call_id)

    @property
    def total_count(self) -> int:
        return len(self._calls)

    @property
    def completed_count(self) -> int:
        return sum(1 for call in self._calls if call.status is ToolCallStatus.COMPLETED)

    @property
    def progress_percent(self) -> int:
        total = self.total_count
        if total == 0:
            return 0
        # half-up rounding, 12.5 -> 13
        return int(math.floor(100 * self.completed_count / total + 0.5))

    def snapshot(self) -> list[ToolCall]:
        """Return copies of the tracked calls in creation order."""

        return [call.copy() for call in self._calls]

    def reset(self) -> None:
        self._calls.clear()
        self._index.clear()

    def apply(self, frame: ToolFrame) -> str | None:
        """Apply *frame* and return the progress label it produces, if any."""

        if isinstance(frame, ToolCallStart):
            return self._start(frame.tool_call_id, frame.tool_name)
        call = self._index.get(frame.tool_call_id)
        if call is None:
            LOGGER.debug("Ignoring %s for unknown tool call %s", type(frame).__name__, frame.tool_call_id)
            return None
        if isinstance(frame, ToolArgsDelta):
            return f"Building arguments for {call.name}..."
        if isinstance(frame, ToolArgsComplete):
            if not self._advance(call, ToolCallStatus.EXECUTING):
                return None
            call.args = dict(frame.args)
            return f"Executing {call.name}..."
        if isinstance(frame, ToolResult):
            if not self._advance(call, ToolCallStatus.COMPLETED):
                return None
            call.result = frame.result
            return f"{call.name} completed"
        return None

    def mark_unfinished(self, status: ToolCallStatus = ToolCallStatus.ERROR, *, result: Any = None) -> list[ToolCall]:
        """Move every non-terminal call to *status* and return the affected calls."""

        affected: list[ToolCall] = []
        for call in self._calls:
            if call.status.is_terminal:
                continue
            if self._advance(call, status):
                if result is not None:
                    call.result = result
                affected.append(call)
        return affected

    def _start(self, call_id: str, name: str) -> str | None:
        if call_id in self._index:
            LOGGER.debug("Duplicate tool call start for %s ignored", call_id)
            return None
        call = ToolCall(id=call_id, name=name)
        self._calls.append(call)
        self._index[call_id] = call
        return f"Calling tool: {name}"

    @staticmethod
    def _advance(call: ToolCall, target: ToolCallStatus) -> bool:
        if not call.status.can_transition_to(target):
            LOGGER.debug(
                "Rejected tool call transition %s -> %s for %s",
                call.status.value,
                target.value,
                call.id,
            )
            return False
        call.status = target
        return True


__all__ = ["ToolInvocationTracker", "ToolFrame"]
