"""One conversation's request loop: send, stream, assemble, persist."""

from __future__ import annotations

import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ...chat.message_model import ChatMessage, MessagePart, StreamingState
from ...chat.threads import ThreadCoordinator
from ...services import telemetry
from ...services.user_context import UserContextProvider
from ..client import ChatTransport
from ..errors import TransportError
from ..stream_protocol import FrameDecoder
from .assembler import MessageAssembler, StateListener
from .suggestions import SuggestionOrchestrator, SuggestionResult

LOGGER = logging.getLogger(__name__)

IMAGE_ONLY_CONTENT = "Image message"


@dataclass(frozen=True, slots=True)
class ImageAttachment:
    """Already-encoded image sent alongside a user message."""

    data: str
    mime_type: str = "image/jpeg"
    name: str | None = None


class ChatSession:
    """Drives requests for the current thread.

    Every :meth:`send` takes a new generation number. A read loop whose
    generation is no longer current (because :meth:`cancel` ran or a newer
    turn started) stops at its next resumption without touching the
    messages, the streaming state or the store.
    """

    def __init__(
        self,
        transport: ChatTransport,
        threads: ThreadCoordinator,
        *,
        context: UserContextProvider | None = None,
        suggestions: SuggestionOrchestrator | None = None,
        on_state_change: Optional[StateListener] = None,
    ) -> None:
        self._transport = transport
        self._threads = threads
        self._context = context
        self._suggestions = suggestions
        self._on_state_change = on_state_change
        self._generation = 0
        self._assembler: MessageAssembler | None = None
        current = threads.current_thread()
        self._messages: list[ChatMessage] = list(current.messages) if current is not None else []

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def state(self) -> StreamingState:
        if self._assembler is None:
            return StreamingState()
        return self._assembler.state

    @property
    def progress_percent(self) -> int:
        return self._assembler.progress_percent if self._assembler is not None else 0

    @property
    def threads(self) -> ThreadCoordinator:
        return self._threads

    def cancel(self) -> None:
        """Abandon the in-flight turn, if any."""

        self._generation += 1
        self._assembler = None

    def new_conversation(self) -> None:
        self.cancel()
        self._threads.clear_current_thread()
        self._messages = []

    def open_thread(self, thread_id: str) -> bool:
        thread = self._threads.switch_to_thread(thread_id)
        if thread is None:
            return False
        self.cancel()
        self._messages = list(thread.messages)
        return True

    async def send(self, text: str, images: Sequence[ImageAttachment] = ()) -> ChatMessage | None:
        """Send one user turn and return the assistant message it produced.

        Returns ``None`` when there was nothing to send, when the stream
        produced neither text nor tool calls, or when the turn was superseded.
        """

        text = (text or "").strip()
        if not text and not images:
            return None

        user_message = self._build_user_message(text, images)
        self._messages.append(user_message)
        self._threads.update_current_thread(self._messages)

        self._generation += 1
        generation = self._generation
        assembler = MessageAssembler(on_change=self._on_state_change)
        self._assembler = assembler
        assembler.begin()

        decoder = FrameDecoder()
        stream = self._transport.stream(self._build_payload())
        failed = False
        try:
            async for chunk in stream:
                if generation != self._generation:
                    LOGGER.debug("Dropping stale chat stream (generation %d)", generation)
                    return None
                for frame in decoder.feed(chunk):
                    assembler.apply(frame)
            if generation != self._generation:
                return None
            for frame in decoder.flush():
                assembler.apply(frame)
            message = assembler.finish()
        except TransportError as exc:
            if generation != self._generation:
                return None
            LOGGER.warning("Chat request failed: %s", exc)
            message = assembler.fail(exc)
            failed = True
            telemetry.emit(
                telemetry.CHAT_TURN_FAILED,
                {"thread_id": self._threads.current_thread_id, "status_code": exc.status_code, "error": exc.message},
            )
        finally:
            await _aclose_quietly(stream)

        if generation != self._generation:
            return None
        if message is None:
            LOGGER.debug("Stream finished without text or tool calls")
            return None
        self._messages.append(message)
        self._threads.update_current_thread(self._messages)
        if not failed:
            telemetry.emit(
                telemetry.CHAT_TURN_COMPLETED,
                {
                    "thread_id": self._threads.current_thread_id,
                    "tool_calls": len(assembler.tracker),
                    "finish_reason": assembler.finish_reason,
                    "skipped_lines": decoder.skipped_lines,
                },
            )
        return message

    async def refresh_suggestions(self, *, force: bool = False) -> SuggestionResult | None:
        """Regenerate follow-up questions for the current thread."""

        if self._suggestions is None:
            return None
        profile = self._context.profile if self._context is not None else None
        location = self._context.location if self._context is not None else None
        return await self._suggestions.generate(
            self._messages,
            scope_id=self._threads.current_thread_id or None,
            profile=profile,
            location=location,
            force=force,
        )

    async def aclose(self) -> None:
        """Release the transport and the suggestion upstream."""

        self.cancel()
        await _aclose_quietly(self._transport)
        if self._suggestions is not None:
            await self._suggestions.aclose()

    def _build_user_message(self, text: str, images: Sequence[ImageAttachment]) -> ChatMessage:
        parts: list[MessagePart] = []
        if text:
            parts.append(MessagePart.text_part(text))
        for image in images:
            parts.append(MessagePart.image_part(image.data, name=image.name, mime_type=image.mime_type))
        return ChatMessage(
            id=f"user-{uuid.uuid4().hex[:12]}",
            role="user",
            content=text or IMAGE_ONLY_CONTENT,
            parts=parts,
        )

    def _build_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"messages": [message.to_request_payload() for message in self._messages]}
        if self._context is not None:
            user_context = self._context.user_context()
            if user_context:
                payload["userContext"] = user_context
        return payload


async def _aclose_quietly(resource: Any) -> None:
    close = getattr(resource, "aclose", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:  # pragma: no cover - closing must not mask the turn result
        LOGGER.debug("Closing %s failed", type(resource).__name__, exc_info=True)


__all__ = ["ChatSession", "ImageAttachment", "IMAGE_ONLY_CONTENT"]
