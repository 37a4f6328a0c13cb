"""sqlite-backed persistence for the conversation collection."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from pathlib import Path

from .config import STORAGE_KEY
from .models import Conversation, utc_now

logger = logging.getLogger("fmchat")


class ConversationStore:
    """
    Holds the in-memory conversation collection and mirrors it to disk.

    The whole collection is serialized as one JSON value under a fixed key in
    a small key/value table. Reads fail soft (anything unreadable loads as an
    empty collection) and writes never raise; the in-memory collection stays
    authoritative until the next successful save.
    """

    def __init__(self, path: Path, key: str = STORAGE_KEY):
        self.path = Path(path)
        self.key = key
        self.conversations: list[Conversation] = []
        # Ids of assistant messages still streaming; never written to disk.
        self._in_flight: set[str] = set()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = self._open()

    def _open(self) -> sqlite3.Connection:
        try:
            return self._connect(self.path)
        except sqlite3.DatabaseError:
            logger.warning(
                "[FMChat Store] Unreadable database %s; quarantining it and starting empty.",
                self.path,
                exc_info=True,
            )
        try:
            self._quarantine()
            return self._connect(self.path)
        except (OSError, sqlite3.Error):
            logger.error(
                "[FMChat Store] Could not recover %s; history will not be saved this run.",
                self.path,
                exc_info=True,
            )
            return self._connect(":memory:")

    def _connect(self, target: Path | str) -> sqlite3.Connection:
        conn = sqlite3.connect(target)
        conn.row_factory = sqlite3.Row
        try:
            self._tune_pragmas(conn)
            self._init_schema(conn)
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _quarantine(self) -> None:
        """Move the database and its -wal/-shm sidecars aside as ``*.corrupt``."""
        quarantine = self.path.with_name(self.path.name + ".corrupt")
        for suffix in ("", "-wal", "-shm"):
            source = self.path.with_name(self.path.name + suffix)
            if source.exists():
                source.replace(quarantine.with_name(quarantine.name + suffix))
        logger.warning("[FMChat Store] Moved unreadable database to %s.", quarantine)

    @staticmethod
    def _tune_pragmas(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA temp_store = MEMORY")

    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )
        conn.commit()

    def close(self) -> None:
        self.conn.close()

    # -- persistence ---------------------------------------------------------

    def load(self) -> list[Conversation]:
        """Load the persisted collection, or an empty one if it is absent or corrupt."""
        try:
            row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (self.key,)).fetchone()
        except sqlite3.Error:
            logger.warning("[FMChat Store] Could not read saved conversations.", exc_info=True)
            row = None

        conversations: list[Conversation] = []
        if row is not None:
            try:
                payload = json.loads(row["value"])
                if not isinstance(payload, list):
                    raise TypeError("saved conversations must be a list")
                conversations = [Conversation.from_dict(item) for item in payload]
                if len({c.id for c in conversations}) != len(conversations):
                    raise ValueError("duplicate conversation ids")
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                logger.warning(
                    "[FMChat Store] Discarding unreadable saved conversations.", exc_info=True
                )
                conversations = []

        self.conversations = conversations
        return list(conversations)

    def save(self, conversations: Iterable[Conversation] | None = None) -> bool:
        """Persist the full collection in one transaction. Returns False on failure."""
        if conversations is not None:
            self.conversations = list(conversations)
        payload = json.dumps(
            [c.to_dict(exclude=self._in_flight) for c in self.conversations], ensure_ascii=False
        )
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE
                    SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (self.key, payload, utc_now().isoformat()),
                )
        except sqlite3.Error:
            logger.warning("[FMChat Store] Failed to save conversations.", exc_info=True)
            return False
        return True

    def mark_in_flight(self, message_id: str) -> None:
        """Keep ``message_id`` out of saves until ``clear_in_flight``."""
        self._in_flight.add(message_id)

    def clear_in_flight(self, message_id: str) -> None:
        self._in_flight.discard(message_id)

    # -- in-memory collection ------------------------------------------------

    def get(self, conversation_id: str) -> Conversation | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def upsert(self, conversation: Conversation) -> None:
        """Replace the entry with the same id, else append."""
        for index, existing in enumerate(self.conversations):
            if existing.id == conversation.id:
                self.conversations[index] = conversation
                return
        self.conversations.append(conversation)

    def insert_front(self, conversation: Conversation) -> None:
        self.remove(conversation.id)
        self.conversations.insert(0, conversation)

    def remove(self, conversation_id: str) -> Conversation | None:
        for index, existing in enumerate(self.conversations):
            if existing.id == conversation_id:
                return self.conversations.pop(index)
        return None

    # -- export --------------------------------------------------------------

    def export_jsonl(self, conversation: Conversation, target: Path) -> None:
        """Export a conversation to JSONL: one metadata line, then one line per message."""
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as handle:
            handle.write(
                json.dumps(
                    {
                        "type": "chat_metadata",
                        "chat_id": conversation.id,
                        "title": conversation.title,
                        "created_at": conversation.created_at.isoformat(),
                        "exported_at": utc_now().isoformat(),
                    },
                    ensure_ascii=False,
                )
                + "\n"
            )
            for message in conversation.messages:
                record = {
                    "type": "message",
                    "role": "user" if message.is_from_user else "assistant",
                    "created_at": message.timestamp.isoformat(),
                    "content": message.content,
                }
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")

    def export_markdown(self, conversation: Conversation, target: Path) -> None:
        """Export a conversation to a Markdown transcript."""
        target.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"# {conversation.title}", "", f"Exported: {utc_now().isoformat()}", ""]
        for message in conversation.messages:
            role = "User" if message.is_from_user else "Assistant"
            lines.append(f"## {role} ({message.timestamp.isoformat()})")
            lines.append("")
            lines.append(message.content)
            lines.append("")
        target.write_text("\n".join(lines), encoding="utf-8")
