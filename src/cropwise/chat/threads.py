"""Lazy thread materialisation and debounced persistence."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..services.chat_store import ChatStore
from .message_model import ChatMessage, ChatThread, derive_thread_title, utc_timestamp

LOGGER = logging.getLogger(__name__)

DEFAULT_SAVE_DEBOUNCE = 0.1


def new_thread_id() -> str:
    return f"thread-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class ThreadCoordinator:
    """Owns the in-memory thread list and keeps the store in step with it.

    A thread id can exist before the thread does: :meth:`create_new_thread`
    only allocates the id, and the thread is added (and saved right away)
    the first time :meth:`update_current_thread` receives messages for it.
    Later updates overwrite the whole thread and are saved after a short
    debounce; :meth:`flush` forces the pending save.
    """

    def __init__(
        self,
        store: ChatStore,
        *,
        debounce_seconds: float = DEFAULT_SAVE_DEBOUNCE,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._debounce = max(0.0, debounce_seconds)
        self._id_factory = id_factory or new_thread_id
        self._threads: list[ChatThread] = [thread for thread in store.get_all_threads() if thread.messages]
        self._current_id = ""
        self._save_handle: asyncio.TimerHandle | None = None

    @property
    def current_thread_id(self) -> str:
        return self._current_id

    @property
    def threads(self) -> list[ChatThread]:
        return list(self._threads)

    @property
    def has_pending_save(self) -> bool:
        return self._save_handle is not None

    def current_thread(self) -> ChatThread | None:
        return self._find(self._current_id) if self._current_id else None

    def create_new_thread(self) -> str:
        """Allocate a fresh id and make it current; nothing is stored yet."""

        self._current_id = self._id_factory()
        LOGGER.debug("Allocated thread id %s", self._current_id)
        return self._current_id

    def update_current_thread(self, messages: Sequence[ChatMessage]) -> ChatThread | None:
        if not messages:
            return None
        if not self._current_id:
            self.create_new_thread()

        now = utc_timestamp()
        thread = self._find(self._current_id)
        if thread is None:
            thread = ChatThread(
                id=self._current_id,
                title=derive_thread_title(list(messages)),
                messages=list(messages),
                created_at=now,
                updated_at=now,
            )
            self._threads.insert(0, thread)
            self._save_now(thread)
            return thread

        thread.messages = list(messages)
        thread.title = derive_thread_title(thread.messages)
        thread.updated_at = now
        self._schedule_save()
        return thread

    def switch_to_thread(self, thread_id: str) -> ChatThread | None:
        thread = self._find(thread_id)
        if thread is None:
            LOGGER.debug("Cannot switch to unknown thread %s", thread_id)
            return None
        self._current_id = thread_id
        return thread

    def delete_thread(self, thread_id: str) -> ChatThread | None:
        """Remove *thread_id*; when it was current, return the thread that takes its place."""

        try:
            self._store.delete_thread(thread_id)
        except OSError as exc:
            LOGGER.error("Failed to delete thread %s from the store: %s", thread_id, exc)
        self._threads = [thread for thread in self._threads if thread.id != thread_id]
        if thread_id != self._current_id:
            return None
        if self._threads:
            self._current_id = self._threads[0].id
            return self._threads[0]
        self._current_id = ""
        return None

    def clear_current_thread(self) -> None:
        """Start a pending new conversation; the next update materialises it."""

        self._current_id = ""

    def flush(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        self._save_all()

    def export_threads(self) -> list[dict[str, Any]]:
        return [thread.to_dict() for thread in self._threads if thread.messages]

    def import_threads(self, data: Iterable[Mapping[str, Any]]) -> int:
        """Merge exported threads, skipping malformed or empty entries."""

        if isinstance(data, (str, bytes)) or not isinstance(data, Iterable):
            raise ValueError("Invalid threads data format")
        imported: list[ChatThread] = []
        skipped = 0
        for entry in data:
            if not isinstance(entry, Mapping):
                skipped += 1
                continue
            try:
                thread = ChatThread.from_dict(entry)
            except ValueError as exc:
                LOGGER.debug("Rejected imported thread: %s", exc)
                skipped += 1
                continue
            if not thread.messages:
                skipped += 1
                continue
            imported.append(thread)
        if skipped:
            LOGGER.warning("Filtered out %d invalid thread(s) during import", skipped)
        if not imported:
            return 0
        self._store.save_threads(imported)
        incoming = {thread.id for thread in imported}
        self._threads = imported + [thread for thread in self._threads if thread.id not in incoming]
        self._threads.sort(key=lambda thread: thread.updated_at, reverse=True)
        return len(imported)

    def _find(self, thread_id: str) -> ChatThread | None:
        for thread in self._threads:
            if thread.id == thread_id:
                return thread
        return None

    def _schedule_save(self) -> None:
        if self._debounce <= 0:
            self._save_all()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save_all()
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self._debounce, self._debounced_save)

    def _debounced_save(self) -> None:
        self._save_handle = None
        self._save_all()

    def _save_now(self, thread: ChatThread) -> None:
        try:
            self._store.save_thread(thread)
        except OSError as exc:
            LOGGER.error("Failed to save new thread %s: %s", thread.id, exc)

    def _save_all(self) -> None:
        pending = [thread for thread in self._threads if thread.messages]
        if not pending:
            return
        try:
            self._store.save_threads(pending)
        except OSError as exc:
            LOGGER.error("Failed to save %d thread(s): %s", len(pending), exc)


__all__ = ["ThreadCoordinator", "DEFAULT_SAVE_DEBOUNCE", "new_thread_id"]
