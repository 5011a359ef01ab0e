"""Tests for the conversation driver that streams and persists turns."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Mapping

import pytest

from cropwise.ai.errors import TransportError
from cropwise.ai.orchestration.chat_session import IMAGE_ONLY_CONTENT, ChatSession, ImageAttachment
from cropwise.ai.orchestration.suggestions import SuggestionOrchestrator
from cropwise.chat.message_model import RequestStatus, StreamingState, ToolCallStatus
from cropwise.chat.threads import ThreadCoordinator
from cropwise.services import telemetry
from cropwise.services.chat_store import InMemoryChatStore
from cropwise.services.user_context import LocationContext, UserContextProvider, UserProfile
from tests.helpers import FakeChatTransport

WEATHER_TURN = (
    'b:{"toolCallId":"t1","toolName":"weather"}\n'
    '9:{"toolCallId":"t1","args":{"city":"Pune"}}\n'
    'a:{"toolCallId":"t1","result":{"temp":30}}\n'
    '0:"Sunny "\n0:"today"\n'
    'd:{"finishReason":"stop"}\n'
)


def _chunks(body: str, size: int = 7) -> list[str]:
    return [body[index : index + size] for index in range(0, len(body), size)]


def _session(transport: Any, store: InMemoryChatStore | None = None, **kwargs: Any) -> ChatSession:
    threads = ThreadCoordinator(store or InMemoryChatStore(), debounce_seconds=0)
    return ChatSession(transport, threads, **kwargs)


@pytest.mark.asyncio
async def test_send_streams_assembles_and_persists(store: InMemoryChatStore) -> None:
    transport = FakeChatTransport(_chunks(WEATHER_TURN))
    states: list[RequestStatus] = []
    session = _session(transport, store, on_state_change=lambda state: states.append(state.request_status))

    message = await session.send("Weather in Pune?")

    assert message is not None
    assert message.content == "Sunny today"
    assert [part.type for part in message.parts] == ["tool-call", "tool-result", "text"]
    assert [entry.role for entry in session.messages] == ["user", "assistant"]
    assert session.state.request_status is RequestStatus.IDLE
    assert session.progress_percent == 100
    assert states[0] is RequestStatus.SUBMITTED and states[-1] is RequestStatus.IDLE

    stored = store.get_all_threads()
    assert len(stored) == 1
    assert stored[0].title == "Weather in Pune?"
    assert [entry.role for entry in stored[0].messages] == ["user", "assistant"]
    assert transport.payloads[0]["messages"] == [{"role": "user", "content": "Weather in Pune?"}]


@pytest.mark.asyncio
async def test_payload_includes_user_context() -> None:
    transport = FakeChatTransport(['0:"ok"\n'])
    context = UserContextProvider(
        UserProfile(name="Asha", main_crops=["onion"]),
        LocationContext(city_name="Nashik", state_name="Maharashtra"),
    )
    session = _session(transport, context=context)

    await session.send("hello")

    user_context = transport.payloads[0]["userContext"]
    assert user_context["name"] == "Asha"
    assert user_context["location"] == "Nashik, Maharashtra"
    assert "currentTimestamp" in user_context


@pytest.mark.asyncio
async def test_final_line_without_newline_is_flushed() -> None:
    session = _session(FakeChatTransport(['0:"Use ', 'mulch"']))

    message = await session.send("tips?")

    assert message is not None and message.content == "Use mulch"


@pytest.mark.asyncio
async def test_missing_completion_frame_marks_tools_as_error() -> None:
    body = 'b:{"toolCallId":"t1","toolName":"soil"}\n0:"Partial answer"\n'
    session = _session(FakeChatTransport([body]))

    message = await session.send("soil?")

    assert message is not None
    assert session.state.request_status is RequestStatus.IDLE
    assert session.state.tool_calls[0].status is ToolCallStatus.ERROR


@pytest.mark.asyncio
async def test_transport_error_produces_error_message(store: InMemoryChatStore) -> None:
    failure = TransportError(message="Chat request failed with HTTP 500", status_code=500)
    received: list[dict[str, Any]] = []
    completed: list[dict[str, Any]] = []
    telemetry.register_event_listener(telemetry.CHAT_TURN_FAILED, received.append)
    telemetry.register_event_listener(telemetry.CHAT_TURN_COMPLETED, completed.append)
    try:
        session = _session(FakeChatTransport(['0:"par', failure]), store)
        message = await session.send("market price?")
    finally:
        telemetry.unregister_event_listener(telemetry.CHAT_TURN_FAILED, received.append)
        telemetry.unregister_event_listener(telemetry.CHAT_TURN_COMPLETED, completed.append)

    assert message is not None
    assert message.id.startswith("error-")
    assert message.content == "Error: Chat request failed with HTTP 500"
    assert session.state.request_status is RequestStatus.ERROR
    assert received and received[0]["status_code"] == 500
    assert completed == []
    assert [entry.role for entry in store.get_all_threads()[0].messages] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_image_only_message() -> None:
    transport = FakeChatTransport(['0:"Looks like leaf spot."\n'])
    session = _session(transport)

    await session.send("", [ImageAttachment(data="aGVsbG8=", mime_type="image/png", name="leaf.png")])

    user = session.messages[0]
    assert user.content == IMAGE_ONLY_CONTENT
    assert len(user.images) == 1
    assert transport.payloads[0]["messages"][0]["content"] == [
        {"type": "image", "image": "data:image/png;base64,aGVsbG8="}
    ]


@pytest.mark.asyncio
async def test_blank_input_sends_nothing() -> None:
    transport = FakeChatTransport()
    session = _session(transport)

    assert await session.send("   ") is None
    assert transport.payloads == []
    assert session.messages == []


@pytest.mark.asyncio
async def test_empty_stream_returns_none() -> None:
    session = _session(FakeChatTransport(['d:{"finishReason":"stop"}\n']))

    assert await session.send("anyone?") is None
    assert [entry.role for entry in session.messages] == ["user"]


class _CancellingTransport:
    """Cancels the owning session between two chunks."""

    def __init__(self) -> None:
        self.session: ChatSession | None = None

    async def stream(self, payload: Mapping[str, Any]) -> AsyncIterator[str]:
        yield '0:"first"\n'
        assert self.session is not None
        self.session.cancel()
        yield '0:"second"\n'


@pytest.mark.asyncio
async def test_cancelled_turn_is_dropped(store: InMemoryChatStore) -> None:
    transport = _CancellingTransport()
    session = _session(transport, store)
    transport.session = session

    message = await session.send("long question")

    assert message is None
    assert [entry.role for entry in session.messages] == ["user"]
    assert session.state == StreamingState()
    assert [entry.role for entry in store.get_all_threads()[0].messages] == ["user"]


class _SlowClosingStream:
    """Yields one chunk; closing it starts a new conversation."""

    def __init__(self, session: ChatSession) -> None:
        self._session = session
        self._chunks = ['0:"late answer"\n', 'd:{"finishReason":"stop"}\n']

    def __aiter__(self) -> "_SlowClosingStream":
        return self

    async def __anext__(self) -> str:
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def aclose(self) -> None:
        await asyncio.sleep(0)
        self._session.new_conversation()


class _SlowClosingTransport:
    def __init__(self) -> None:
        self.session: ChatSession | None = None

    def stream(self, payload: Mapping[str, Any]) -> _SlowClosingStream:
        assert self.session is not None
        return _SlowClosingStream(self.session)


@pytest.mark.asyncio
async def test_turn_superseded_while_closing_stream_is_dropped(store: InMemoryChatStore) -> None:
    transport = _SlowClosingTransport()
    session = _session(transport, store)
    transport.session = session

    message = await session.send("first question")

    assert message is None
    assert session.messages == []
    assert session.threads.current_thread_id == ""
    assert [entry.role for entry in store.get_all_threads()[0].messages] == ["user"]


@pytest.mark.asyncio
async def test_refresh_suggestions_uses_current_thread_scope(store: InMemoryChatStore) -> None:
    suggestions = SuggestionOrchestrator(None, store)
    session = _session(FakeChatTransport(['0:"Drain the field and watch for blight."\n']), store, suggestions=suggestions)

    await session.send("My tomato field is flooded")
    result = await session.refresh_suggestions()

    assert result is not None and result.fallback
    assert result.queries
    thread_id = session.threads.current_thread_id
    record = store.get_suggested_queries(thread_id)
    assert record is not None and record.id == thread_id


@pytest.mark.asyncio
async def test_refresh_without_orchestrator_returns_none() -> None:
    session = _session(FakeChatTransport())

    assert await session.refresh_suggestions() is None


@pytest.mark.asyncio
async def test_new_conversation_and_open_thread(store: InMemoryChatStore) -> None:
    session = _session(FakeChatTransport(['0:"one"\n'], ['0:"two"\n']), store)
    await session.send("first thread")
    first_id = session.threads.current_thread_id

    session.new_conversation()
    assert session.messages == []
    await session.send("second thread")

    assert session.open_thread(first_id)
    assert [entry.content for entry in session.messages] == ["first thread", "one"]
    assert not session.open_thread("missing")


@pytest.mark.asyncio
async def test_aclose_releases_transport() -> None:
    transport = FakeChatTransport()
    session = _session(transport)

    await session.aclose()

    assert transport.closed
