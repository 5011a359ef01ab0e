"""Persistence for chat threads and suggested-query records."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

from ..chat.message_model import ChatThread, SuggestedQueriesRecord, utc_timestamp
from .settings import DEFAULT_DATA_DIR

__all__ = [
    "DEFAULT_SCOPE_ID",
    "ONBOARDING_SCOPE_ID",
    "ChatStore",
    "InMemoryChatStore",
    "JsonChatStore",
]

LOGGER = logging.getLogger(__name__)
DEFAULT_SCOPE_ID = "global"
ONBOARDING_SCOPE_ID = "onboarding"
_STORE_FILENAME = "chat_store.json"
_STORE_VERSION = 1


class ChatStore(Protocol):
    """Keyed, whole-record store consumed by threads and suggestions."""

    def get_all_threads(self) -> list[ChatThread]:  # pragma: no cover - protocol stub
        ...

    def get_thread(self, thread_id: str) -> ChatThread | None:  # pragma: no cover - protocol stub
        ...

    def save_thread(self, thread: ChatThread) -> None:  # pragma: no cover - protocol stub
        ...

    def save_threads(self, threads: Iterable[ChatThread]) -> None:  # pragma: no cover - protocol stub
        ...

    def delete_thread(self, thread_id: str) -> None:  # pragma: no cover - protocol stub
        ...

    def clear_all_threads(self) -> None:  # pragma: no cover - protocol stub
        ...

    def get_suggested_queries(self, scope_id: str = DEFAULT_SCOPE_ID) -> SuggestedQueriesRecord | None:  # pragma: no cover
        ...

    def save_suggested_queries(
        self, queries: list[str], context_hash: str, scope_id: str = DEFAULT_SCOPE_ID
    ) -> SuggestedQueriesRecord:  # pragma: no cover - protocol stub
        ...

    def clear_suggested_queries(self, scope_id: str | None = None) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryChatStore:
    """Dictionary-backed store; records are copied in and out."""

    def __init__(self) -> None:
        self._threads: dict[str, dict[str, Any]] = {}
        self._queries: dict[str, dict[str, Any]] = {}

    def get_all_threads(self) -> list[ChatThread]:
        threads = [ChatThread.from_dict(payload) for payload in self._threads.values()]
        # most recently updated first
        threads.sort(key=lambda thread: thread.updated_at, reverse=True)
        return threads

    def get_thread(self, thread_id: str) -> ChatThread | None:
        payload = self._threads.get(thread_id)
        return ChatThread.from_dict(payload) if payload is not None else None

    def save_thread(self, thread: ChatThread) -> None:
        self._threads[thread.id] = thread.to_dict()
        self._changed()

    def save_threads(self, threads: Iterable[ChatThread]) -> None:
        count = 0
        for thread in threads:
            self._threads[thread.id] = thread.to_dict()
            count += 1
        if count:
            self._changed()

    def delete_thread(self, thread_id: str) -> None:
        if self._threads.pop(thread_id, None) is not None:
            self._changed()

    def clear_all_threads(self) -> None:
        self._threads.clear()
        self._changed()

    def get_suggested_queries(self, scope_id: str = DEFAULT_SCOPE_ID) -> SuggestedQueriesRecord | None:
        payload = self._queries.get(scope_id)
        if payload is None and scope_id != DEFAULT_SCOPE_ID:
            payload = self._queries.get(DEFAULT_SCOPE_ID)
        return SuggestedQueriesRecord.from_dict(payload) if payload is not None else None

    def save_suggested_queries(
        self, queries: list[str], context_hash: str, scope_id: str = DEFAULT_SCOPE_ID
    ) -> SuggestedQueriesRecord:
        record = SuggestedQueriesRecord(
            id=scope_id,
            queries=list(queries),
            last_updated=utc_timestamp(),
            context_hash=context_hash,
        )
        self._queries[scope_id] = record.to_dict()
        self._changed()
        return record

    def clear_suggested_queries(self, scope_id: str | None = None) -> None:
        if scope_id:
            self._queries.pop(scope_id, None)
        else:
            self._queries.clear()
        self._changed()

    def _changed(self) -> None:
        """Hook for subclasses that mirror the records somewhere durable."""


class JsonChatStore(InMemoryChatStore):
    """Store that rewrites one JSON file atomically after every mutation."""

    def __init__(self, path: Path | None = None) -> None:
        super().__init__()
        self._path = path or (DEFAULT_DATA_DIR / _STORE_FILENAME)
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _changed(self) -> None:
        payload = {
            "version": _STORE_VERSION,
            "threads": list(self._threads.values()),
            "suggested_queries": list(self._queries.values()),
        }
        body = json.dumps(payload, indent=2, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)

    def _load(self) -> None:
        payload = self._read_payload()
        for entry in payload.get("threads") or ():
            if not isinstance(entry, Mapping):
                continue
            try:
                thread = ChatThread.from_dict(entry)
            except ValueError as exc:
                LOGGER.warning("Skipping unreadable thread in %s: %s", self._path, exc)
                continue
            if thread.messages:
                self._threads[thread.id] = thread.to_dict()
        for entry in payload.get("suggested_queries") or ():
            if isinstance(entry, Mapping) and entry.get("id"):
                record = SuggestedQueriesRecord.from_dict(entry)
                self._queries[record.id] = record.to_dict()

    def _read_payload(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Chat store %s is not valid JSON: %s", self._path, exc)
            return {}
        return dict(data) if isinstance(data, Mapping) else {}
