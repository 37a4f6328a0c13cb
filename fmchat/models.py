"""Conversation and message records."""

from __future__ import annotations

import uuid
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import DEFAULT_TITLE, TITLE_PREVIEW_CHARS


def utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_timestamp(raw: Any) -> datetime:
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def derive_title(first_user_message: str) -> str:
    """Build a conversation title from the opening user message."""
    text = first_user_message.strip()
    if not text:
        return DEFAULT_TITLE
    preview = text[:TITLE_PREVIEW_CHARS]
    return preview + ("..." if len(text) > TITLE_PREVIEW_CHARS else "")


@dataclass
class Message:
    """A single chat message. Only an in-flight assistant reply changes ``content``."""

    content: str
    is_from_user: bool
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "is_from_user": self.is_from_user,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        if not isinstance(data["is_from_user"], bool):
            raise TypeError("is_from_user must be a boolean")
        return cls(
            id=str(data["id"]),
            content=str(data["content"]),
            is_from_user=data["is_from_user"],
            timestamp=_parse_timestamp(data["timestamp"]),
        )


@dataclass
class Conversation:
    """An ordered, append-only chat log."""

    id: str = field(default_factory=_new_id)
    title: str = DEFAULT_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    custom_title: bool = False

    def append(self, message: Message) -> None:
        """Append a message, touch ``updated_at`` and derive the title on the first one."""
        self.messages.append(message)
        self.touch()
        if len(self.messages) == 1 and message.is_from_user and not self.custom_title:
            self.title = derive_title(message.content)

    def remove_message(self, message_id: str) -> bool:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        removed = len(self.messages) != before
        if removed:
            self.touch()
        return removed

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def rename(self, title: str) -> None:
        self.title = title.strip() or DEFAULT_TITLE
        self.custom_title = True
        self.touch()

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_dict(self, exclude: Collection[str] = ()) -> dict[str, Any]:
        """Serialize; messages whose id is in ``exclude`` are left out."""
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages if m.id not in exclude],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "custom_title": self.custom_title,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        raw_messages = data["messages"]
        if not isinstance(raw_messages, list):
            raise TypeError("messages must be a list")
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            messages=[Message.from_dict(m) for m in raw_messages],
            created_at=_parse_timestamp(data["created_at"]),
            updated_at=_parse_timestamp(data["updated_at"]),
            custom_title=bool(data.get("custom_title", False)),
        )
