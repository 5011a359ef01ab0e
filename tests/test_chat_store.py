"""Tests for the chat thread and suggested-query stores."""

from __future__ import annotations

import json
from pathlib import Path

from cropwise.chat.message_model import ChatMessage, ChatThread
from cropwise.services.chat_store import DEFAULT_SCOPE_ID, InMemoryChatStore, JsonChatStore


def _thread(thread_id: str, updated_at: str) -> ChatThread:
    return ChatThread(
        id=thread_id,
        title=thread_id,
        messages=[ChatMessage(id=f"{thread_id}-m1", role="user", content="hello")],
        created_at=updated_at,
        updated_at=updated_at,
    )


def test_threads_are_sorted_most_recent_first() -> None:
    store = InMemoryChatStore()
    store.save_threads([_thread("old", "2024-01-01T00:00:00+00:00"), _thread("new", "2024-05-01T00:00:00+00:00")])

    assert [thread.id for thread in store.get_all_threads()] == ["new", "old"]


def test_records_are_copied_in_and_out() -> None:
    store = InMemoryChatStore()
    thread = _thread("t1", "2024-01-01T00:00:00+00:00")
    store.save_thread(thread)

    thread.title = "changed after save"
    loaded = store.get_thread("t1")

    assert loaded is not None and loaded.title == "t1"


def test_suggested_queries_fall_back_to_default_scope() -> None:
    store = InMemoryChatStore()
    store.save_suggested_queries(["What next?"], "h1", DEFAULT_SCOPE_ID)

    record = store.get_suggested_queries("thread-1")

    assert record is not None
    assert record.id == DEFAULT_SCOPE_ID
    assert record.queries == ["What next?"]


def test_saved_queries_are_capped_at_four() -> None:
    store = InMemoryChatStore()

    record = store.save_suggested_queries([f"Question {i}?" for i in range(6)], "h", "thread-1")

    assert len(record.queries) == 4


def test_json_store_persists_between_instances(tmp_path: Path) -> None:
    path = tmp_path / "data" / "chat_store.json"
    first = JsonChatStore(path)
    first.save_thread(_thread("t1", "2024-01-01T00:00:00+00:00"))
    first.save_suggested_queries(["How much water?"], "abc", "t1")

    second = JsonChatStore(path)

    loaded = second.get_thread("t1")
    assert loaded is not None and loaded.messages[0].content == "hello"
    record = second.get_suggested_queries("t1")
    assert record is not None and record.context_hash == "abc"
    assert not path.with_suffix(".tmp").exists()


def test_json_store_skips_invalid_and_empty_threads(tmp_path: Path) -> None:
    path = tmp_path / "chat_store.json"
    valid = _thread("ok", "2024-01-01T00:00:00+00:00").to_dict()
    empty = dict(valid, id="empty", messages=[])
    path.write_text(json.dumps({"version": 1, "threads": [valid, empty, {"id": 3}, "junk"]}), encoding="utf-8")

    store = JsonChatStore(path)

    assert [thread.id for thread in store.get_all_threads()] == ["ok"]


def test_json_store_tolerates_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "chat_store.json"
    path.write_text("{not json", encoding="utf-8")

    store = JsonChatStore(path)

    assert store.get_all_threads() == []


def test_clear_all_queries(tmp_path: Path) -> None:
    store = JsonChatStore(tmp_path / "chat_store.json")
    store.save_suggested_queries(["A question?"], "h", "t1")
    store.save_suggested_queries(["B question?"], "h", DEFAULT_SCOPE_ID)

    store.clear_suggested_queries()

    assert store.get_suggested_queries("t1") is None
    payload = json.loads((tmp_path / "chat_store.json").read_text(encoding="utf-8"))
    assert payload["suggested_queries"] == []
