"""Chat message, tool call and thread data models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional

ChatRole = Literal["user", "assistant"]
PartKind = Literal["text", "image", "tool-call", "tool-result", "suggested-queries"]

DEFAULT_THREAD_TITLE = "New Chat"
TITLE_MAX_CHARS = 50


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def utc_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string."""

    return _utcnow().isoformat()


class ToolCallStatus(str, Enum):
    """Lifecycle of a remote tool call within one response."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.ERROR)

    def can_transition_to(self, target: "ToolCallStatus") -> bool:
        if self.is_terminal:
            return False
        return target.rank > self.rank


_STATUS_RANK = {
    ToolCallStatus.PENDING: 0,
    ToolCallStatus.EXECUTING: 1,
    ToolCallStatus.COMPLETED: 2,
    ToolCallStatus.ERROR: 2,
}


class RequestStatus(str, Enum):
    """Overall state of the in-flight chat request."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    ERROR = "error"


@dataclass(slots=True)
class ToolCall:
    """One tool invocation tracked while a response streams in."""

    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    status: ToolCallStatus = ToolCallStatus.PENDING

    def copy(self) -> "ToolCall":
        return replace(self, args=dict(self.args))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "args": dict(self.args),
            "result": self.result,
            "status": self.status.value,
        }


@dataclass(slots=True)
class StreamingState:
    """Live view of a streaming request, bound by the UI."""

    current_step: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    final_response: str = ""
    request_status: RequestStatus = RequestStatus.IDLE

    @property
    def is_busy(self) -> bool:
        return self.request_status in (RequestStatus.SUBMITTED, RequestStatus.STREAMING)


@dataclass(slots=True)
class MessagePart:
    """Tagged fragment of a chat message.

    Only the attributes relevant to ``type`` are populated; the others stay
    ``None``.
    """

    type: PartKind
    text: Optional[str] = None
    image_data: Optional[str] = None
    image_name: Optional[str] = None
    image_type: Optional[str] = None
    tool_name: Optional[str] = None
    tool_args: Optional[Dict[str, Any]] = None
    tool_result: Any = None
    tool_call_id: Optional[str] = None
    queries: Optional[list[str]] = None

    @classmethod
    def text_part(cls, text: str) -> "MessagePart":
        return cls(type="text", text=text)

    @classmethod
    def image_part(cls, data: str, *, name: str | None = None, mime_type: str | None = None) -> "MessagePart":
        return cls(type="image", image_data=data, image_name=name, image_type=mime_type)

    @classmethod
    def tool_call_part(cls, call: ToolCall) -> "MessagePart":
        return cls(type="tool-call", tool_name=call.name, tool_args=dict(call.args), tool_call_id=call.id)

    @classmethod
    def tool_result_part(cls, call: ToolCall) -> "MessagePart":
        return cls(type="tool-result", tool_result=call.result, tool_call_id=call.id, tool_name=call.name)

    @classmethod
    def suggested_queries_part(cls, queries: list[str]) -> "MessagePart":
        return cls(type="suggested-queries", queries=list(queries))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        for key in (
            "text",
            "image_data",
            "image_name",
            "image_type",
            "tool_name",
            "tool_args",
            "tool_result",
            "tool_call_id",
            "queries",
        ):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MessagePart":
        kind = payload.get("type")
        if kind not in ("text", "image", "tool-call", "tool-result", "suggested-queries"):
            raise ValueError(f"Unknown message part type: {kind!r}")
        queries = payload.get("queries")
        return cls(
            type=kind,
            text=payload.get("text"),
            image_data=payload.get("image_data"),
            image_name=payload.get("image_name"),
            image_type=payload.get("image_type"),
            tool_name=payload.get("tool_name"),
            tool_args=payload.get("tool_args"),
            tool_result=payload.get("tool_result"),
            tool_call_id=payload.get("tool_call_id"),
            queries=list(queries) if isinstance(queries, list) else None,
        )


@dataclass(slots=True)
class ChatMessage:
    """Represents a row inside the chat history list."""

    id: str
    role: ChatRole
    content: str
    parts: list[MessagePart] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def text(self) -> str:
        """Concatenated text parts, falling back to ``content``."""

        chunks = [part.text for part in self.parts if part.type == "text" and part.text]
        return "".join(chunks) if chunks else self.content

    @property
    def images(self) -> list[MessagePart]:
        return [part for part in self.parts if part.type == "image"]

    def to_request_payload(self) -> Dict[str, Any]:
        """Return the ``{role, content}`` entry sent to the chat endpoint."""

        if self.role != "user":
            return {"role": self.role, "content": self.content}
        content: list[Dict[str, Any]] = []
        for part in self.parts:
            if part.type == "text" and part.text:
                content.append({"type": "text", "text": part.text})
            elif part.type == "image" and part.image_data and part.image_type:
                content.append({"type": "image", "image": f"data:{part.image_type};base64,{part.image_data}"})
        if not content:
            return {"role": self.role, "content": self.content}
        if len(content) == 1 and content[0]["type"] == "text":
            return {"role": self.role, "content": content[0]["text"]}
        return {"role": self.role, "content": content}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence."""

        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "parts": [part.to_dict() for part in self.parts],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatMessage":
        role = payload.get("role")
        if role not in ("user", "assistant"):
            raise ValueError(f"Unsupported chat role: {role!r}")
        created_raw = payload.get("created_at")
        created_at = _parse_timestamp(created_raw) if isinstance(created_raw, str) else _utcnow()
        return cls(
            id=str(payload.get("id") or ""),
            role=role,
            content=str(payload.get("content") or ""),
            parts=[MessagePart.from_dict(item) for item in payload.get("parts") or () if isinstance(item, Mapping)],
            created_at=created_at,
        )


@dataclass(slots=True)
class ChatThread:
    """A titled, persisted sequence of messages."""

    id: str
    title: str = DEFAULT_THREAD_TITLE
    messages: list[ChatMessage] = field(default_factory=list)
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatThread":
        thread_id = payload.get("id")
        title = payload.get("title")
        messages = payload.get("messages")
        created_at = payload.get("created_at")
        updated_at = payload.get("updated_at")
        if not isinstance(thread_id, str) or not thread_id:
            raise ValueError("Thread id must be a non-empty string")
        if not isinstance(title, str) or not isinstance(messages, list):
            raise ValueError(f"Thread {thread_id} is missing a title or message list")
        if not isinstance(created_at, str) or not isinstance(updated_at, str):
            raise ValueError(f"Thread {thread_id} is missing timestamps")
        return cls(
            id=thread_id,
            title=title,
            messages=[ChatMessage.from_dict(item) for item in messages if isinstance(item, Mapping)],
            created_at=created_at,
            updated_at=updated_at,
        )


@dataclass(slots=True)
class SuggestedQueriesRecord:
    """Stored follow-up suggestions for one scope (thread or default)."""

    id: str
    queries: list[str] = field(default_factory=list)
    last_updated: str = field(default_factory=utc_timestamp)
    context_hash: str = ""

    def __post_init__(self) -> None:
        cleaned = [query.strip() for query in self.queries if isinstance(query, str) and query.strip()]
        self.queries = cleaned[:4]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queries": list(self.queries),
            "last_updated": self.last_updated,
            "context_hash": self.context_hash,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SuggestedQueriesRecord":
        queries = payload.get("queries")
        return cls(
            id=str(payload.get("id") or ""),
            queries=list(queries) if isinstance(queries, list) else [],
            last_updated=str(payload.get("last_updated") or utc_timestamp()),
            context_hash=str(payload.get("context_hash") or ""),
        )


def derive_thread_title(messages: list[ChatMessage]) -> str:
    """Title is the first message's content, truncated to 50 chars + ``...``."""

    if not messages or not messages[0].content:
        return DEFAULT_THREAD_TITLE
    content = messages[0].content
    if len(content) > TITLE_MAX_CHARS:
        return f"{content[:TITLE_MAX_CHARS]}..."
    return content


def as_role_content(message: ChatMessage | Mapping[str, Any]) -> tuple[str, str]:
    """Return ``(role, text)`` for a :class:`ChatMessage` or a plain mapping.

    Structured mapping content (a list of parts) is serialized to JSON so it
    can still be matched against keywords and fingerprinted.
    """

    if isinstance(message, ChatMessage):
        return message.role, message.content
    role = str(message.get("role") or "")
    content = message.get("content")
    if isinstance(content, str):
        return role, content
    if content is None:
        return role, ""
    try:
        return role, json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError):
        return role, str(content)


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return _utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    "ChatRole",
    "PartKind",
    "DEFAULT_THREAD_TITLE",
    "ToolCallStatus",
    "RequestStatus",
    "ToolCall",
    "StreamingState",
    "MessagePart",
    "ChatMessage",
    "ChatThread",
    "SuggestedQueriesRecord",
    "as_role_content",
    "derive_thread_title",
    "utc_timestamp",
]
