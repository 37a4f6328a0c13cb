"""Runtime settings and constants."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger("fmchat")

DB_FILENAME = "chat_history.sqlite3"
STORAGE_KEY = "saved_conversations"
DEFAULT_TITLE = "New Chat"
TITLE_PREVIEW_CHARS = 30
STREAM_FIRST_CHUNK_TIMEOUT_SECONDS = 25.0
STREAM_CHUNK_IDLE_TIMEOUT_SECONDS = 12.0

SYSTEM_INSTRUCTIONS = (
    "You are a helpful assistant running entirely on-device. "
    "Be accurate, concise, and explicit about uncertainty."
)


def default_data_dir() -> Path:
    return Path.home() / ".fmchat"


def _env_timeout(name: str, fallback: float | None) -> float | None:
    """Parse a timeout env var; ``0`` or ``none`` disables the bound."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return fallback
    value = raw.strip().lower()
    if value in {"0", "none", "off"}:
        return None
    try:
        parsed = float(value)
    except ValueError:
        logger.warning("[FMChat Config] Ignoring invalid %s=%r.", name, raw)
        return fallback
    return parsed if parsed > 0 else None


@dataclass
class ChatSettings:
    """Settings shared by the store, session manager and reconciler."""

    data_dir: Path = field(default_factory=default_data_dir)
    instructions: str = SYSTEM_INSTRUCTIONS
    first_chunk_timeout: float | None = STREAM_FIRST_CHUNK_TIMEOUT_SECONDS
    idle_timeout: float | None = STREAM_CHUNK_IDLE_TIMEOUT_SECONDS

    @property
    def db_path(self) -> Path:
        return self.data_dir / DB_FILENAME

    @classmethod
    def from_env(cls) -> ChatSettings:
        """Build settings from ``FMCHAT_*`` environment variables."""
        raw_dir = os.environ.get("FMCHAT_DATA_DIR", "").strip()
        data_dir = Path(raw_dir).expanduser() if raw_dir else default_data_dir()
        return cls(
            data_dir=data_dir,
            first_chunk_timeout=_env_timeout(
                "FMCHAT_FIRST_CHUNK_TIMEOUT", STREAM_FIRST_CHUNK_TIMEOUT_SECONDS
            ),
            idle_timeout=_env_timeout("FMCHAT_IDLE_TIMEOUT", STREAM_CHUNK_IDLE_TIMEOUT_SECONDS),
        )
