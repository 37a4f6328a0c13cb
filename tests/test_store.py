"""Tests for fmchat.store (persistence, corruption tolerance, export)."""

import json
import logging
import sqlite3
from pathlib import Path
from unittest.mock import patch

from fmchat.models import Conversation, Message
from fmchat.store import ConversationStore


def _conversation(title: str, *pairs: tuple[str, bool]) -> Conversation:
    conversation = Conversation(title=title)
    for content, is_from_user in pairs:
        conversation.append(Message(content=content, is_from_user=is_from_user))
    return conversation


def _write_raw(path, key, value):
    conn = sqlite3.connect(path)
    with conn:
        conn.execute(
            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, "2024-01-01T00:00:00+00:00"),
        )
    conn.close()


# ========================================================================
# load / save
# ========================================================================


class TestLoadSave:
    def test_absent_data_loads_empty(self, store):
        assert store.load() == []

    def test_round_trip_preserves_ids_content_and_order(self, settings, store):
        first = _conversation("First", ("Hi", True), ("Hello!", False))
        second = _conversation("Second", ("Question", True))
        assert store.save([first, second])

        reopened = ConversationStore(settings.db_path)
        try:
            loaded = reopened.load()
        finally:
            reopened.close()

        assert [c.id for c in loaded] == [first.id, second.id]
        assert [[m.content for m in c.messages] for c in loaded] == [["Hi", "Hello!"], ["Question"]]
        assert [[m.id for m in c.messages] for c in loaded] == [
            [m.id for m in first.messages],
            [m.id for m in second.messages],
        ]
        assert loaded[0].messages[1].is_from_user is False

    def test_save_without_argument_persists_in_memory_collection(self, settings, store):
        store.upsert(_conversation("Kept", ("x", True)))
        store.save()

        reopened = ConversationStore(settings.db_path)
        try:
            assert [c.title for c in reopened.load()] == ["Kept"]
        finally:
            reopened.close()

    def test_corrupt_json_loads_empty(self, settings, store):
        _write_raw(settings.db_path, store.key, "{not json")
        assert store.load() == []

    def test_wrong_shape_loads_empty(self, settings, store):
        _write_raw(settings.db_path, store.key, json.dumps({"id": "not-a-list"}))
        assert store.load() == []

    def test_record_missing_fields_loads_empty(self, settings, store):
        _write_raw(settings.db_path, store.key, json.dumps([{"id": "c1"}]))
        assert store.load() == []

    def test_duplicate_ids_load_empty(self, settings, store):
        record = _conversation("Dup").to_dict()
        _write_raw(settings.db_path, store.key, json.dumps([record, record]))
        assert store.load() == []

    def test_corruption_is_logged(self, settings, store, caplog):
        _write_raw(settings.db_path, store.key, "garbage")
        with caplog.at_level(logging.WARNING, logger="fmchat"):
            store.load()
        assert any("unreadable" in r.message.lower() for r in caplog.records)

    def test_unreadable_database_file_starts_empty(self, tmp_path):
        path = tmp_path / "chat_history.sqlite3"
        path.write_bytes(b"this is definitely not an sqlite database" * 20)

        store = ConversationStore(path)
        try:
            assert store.load() == []
            assert store.save([_conversation("Fresh")])
        finally:
            store.close()
        assert (tmp_path / "chat_history.sqlite3.corrupt").exists()

    def test_unreadable_database_sidecars_are_quarantined(self, tmp_path):
        path = tmp_path / "chat_history.sqlite3"
        path.write_bytes(b"not a database" * 50)
        stale_wal = tmp_path / "chat_history.sqlite3-wal"
        stale_wal.write_bytes(b"stale write-ahead log")

        store = ConversationStore(path)
        try:
            assert store.load() == []
        finally:
            store.close()
        moved = tmp_path / "chat_history.sqlite3.corrupt-wal"
        assert moved.read_bytes() == b"stale write-ahead log"

    def test_failed_recovery_falls_back_to_memory(self, tmp_path, caplog):
        path = tmp_path / "chat_history.sqlite3"
        path.write_bytes(b"not a database" * 50)

        with patch.object(Path, "replace", side_effect=OSError("read-only file system")):
            with caplog.at_level(logging.ERROR, logger="fmchat"):
                store = ConversationStore(path)
        try:
            assert store.load() == []
            assert store.save([_conversation("Session only")])
            assert [c.title for c in store.load()] == ["Session only"]
        finally:
            store.close()
        assert any("Could not recover" in r.message for r in caplog.records)

    def test_in_flight_messages_are_not_saved(self, settings, store):
        conversation = _conversation("Draft", ("Hello", True))
        partial = Message(content="Par", is_from_user=False)
        conversation.append(partial)
        store.mark_in_flight(partial.id)

        store.save([conversation])
        reopened = ConversationStore(settings.db_path)
        try:
            assert [m.content for m in reopened.load()[0].messages] == ["Hello"]
        finally:
            reopened.close()

        store.clear_in_flight(partial.id)
        store.save()
        assert [m.content for m in store.load()[0].messages] == ["Hello", "Par"]

    def test_save_failure_is_swallowed(self, store, caplog):
        store.close()
        with caplog.at_level(logging.WARNING, logger="fmchat"):
            assert store.save([_conversation("Lost")]) is False
        assert any("Failed to save" in r.message for r in caplog.records)
        # In-memory state stays authoritative.
        assert [c.title for c in store.conversations] == ["Lost"]


# ========================================================================
# In-memory collection
# ========================================================================


class TestCollection:
    def test_upsert_replaces_matching_id(self, store):
        conversation = _conversation("Before")
        store.upsert(conversation)
        replacement = Conversation(id=conversation.id, title="After")
        store.upsert(replacement)
        assert [c.title for c in store.conversations] == ["After"]

    def test_upsert_appends_new_id(self, store):
        store.upsert(_conversation("A"))
        store.upsert(_conversation("B"))
        assert [c.title for c in store.conversations] == ["A", "B"]

    def test_insert_front(self, store):
        store.upsert(_conversation("Old"))
        store.insert_front(_conversation("New"))
        assert [c.title for c in store.conversations] == ["New", "Old"]

    def test_remove_and_get(self, store):
        conversation = _conversation("Gone")
        store.upsert(conversation)
        assert store.get(conversation.id) is conversation
        assert store.remove(conversation.id) is conversation
        assert store.get(conversation.id) is None
        assert store.remove(conversation.id) is None


# ========================================================================
# Export
# ========================================================================


class TestExport:
    def test_export_jsonl(self, store, tmp_path):
        conversation = _conversation("Trip", ("Where?", True), ("Kyoto.", False))
        target = tmp_path / "out" / "trip.jsonl"

        store.export_jsonl(conversation, target)

        lines = [json.loads(line) for line in target.read_text(encoding="utf-8").splitlines()]
        assert lines[0]["type"] == "chat_metadata"
        assert lines[0]["title"] == "Trip"
        assert [(r["role"], r["content"]) for r in lines[1:]] == [
            ("user", "Where?"),
            ("assistant", "Kyoto."),
        ]

    def test_export_markdown(self, store, tmp_path):
        conversation = _conversation("Trip", ("Where?", True), ("Kyoto.", False))
        target = tmp_path / "trip.md"

        store.export_markdown(conversation, target)

        text = target.read_text(encoding="utf-8")
        assert text.startswith("# Trip")
        assert "## User" in text
        assert "## Assistant" in text
        assert "Kyoto." in text
