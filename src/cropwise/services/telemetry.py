"""In-process telemetry for chat turns and suggestion outcomes."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}

SUGGESTIONS_GENERATED = "suggestions.generated"
SUGGESTIONS_FALLBACK = "suggestions.fallback"
CHAT_TURN_COMPLETED = "chat.turn_completed"
CHAT_TURN_FAILED = "chat.turn_failed"


@dataclass(slots=True)
class SuggestionOutcome:
    """One finished suggestion generation, successful or not."""

    scope_id: str
    query_count: int
    fallback: bool
    rate_limited: bool = False
    cached: bool = False
    upstream_status: int | None = None
    error: str | None = None
    attempts: int = 0
    elapsed_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


class TelemetrySink(Protocol):
    """Sink interface used to collect suggestion outcomes."""

    def record(self, event: SuggestionOutcome) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[SuggestionOutcome] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: SuggestionOutcome) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[SuggestionOutcome]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def snapshot_events(sink: TelemetrySink, limit: int | None = None) -> Sequence[SuggestionOutcome]:
    """Best-effort helper to retrieve events from arbitrary sinks."""

    if hasattr(sink, "tail"):
        tail = getattr(sink, "tail")
        try:
            return list(tail(limit))  # type: ignore[misc]
        except TypeError:
            return list(tail())  # type: ignore[misc]
    raise NotImplementedError("Telemetry sink does not support snapshotting")


def fallback_rate(events: Iterable[SuggestionOutcome]) -> float:
    """Share of non-cached generations that ended on heuristic suggestions."""

    total = 0
    fallbacks = 0
    for event in events:
        if event.cached:
            continue
        total += 1
        if event.fallback:
            fallbacks += 1
    return fallbacks / total if total else 0.0


def record_suggestion_outcome(outcome: SuggestionOutcome, sink: TelemetrySink | None = None) -> None:
    """Store *outcome* in *sink* and broadcast the matching event."""

    if sink is not None:
        try:
            sink.record(outcome)
        except Exception:  # pragma: no cover - sinks must not break generation
            LOGGER.debug("Telemetry sink %s failed", sink, exc_info=True)
    event_name = SUGGESTIONS_FALLBACK if outcome.fallback else SUGGESTIONS_GENERATED
    emit(event_name, outcome.to_payload())


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "SUGGESTIONS_GENERATED",
    "SUGGESTIONS_FALLBACK",
    "CHAT_TURN_COMPLETED",
    "CHAT_TURN_FAILED",
    "SuggestionOutcome",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "snapshot_events",
    "fallback_rate",
    "record_suggestion_outcome",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
