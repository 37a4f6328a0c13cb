"""Ownership of the single inference session bound to a conversation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from .config import SYSTEM_INSTRUCTIONS
from .exceptions import SessionCreationError
from .models import utc_now
from .protocols import ChatSession, ModelBackend

logger = logging.getLogger("fmchat")


@dataclass(frozen=True)
class SessionHandle:
    conversation_id: str
    session: ChatSession
    created_at: datetime = field(default_factory=utc_now)


class SessionManager:
    """
    Holds at most one ``SessionHandle``.

    A handle is never shared between conversations. Asking for a session for
    a different conversation discards the old one; prior turns are not
    replayed into the new session.
    """

    def __init__(self, backend: ModelBackend, instructions: str = SYSTEM_INSTRUCTIONS) -> None:
        self.backend = backend
        self.instructions = instructions
        self._handle: SessionHandle | None = None

    @property
    def handle(self) -> SessionHandle | None:
        return self._handle

    def ensure_session(self, conversation_id: str) -> SessionHandle:
        if self._handle is not None and self._handle.conversation_id == conversation_id:
            return self._handle

        self._handle = None
        try:
            session = self.backend.create_session(self.instructions)
        except Exception as exc:
            logger.error(
                "[FMChat Session] Failed to create session for %s: %s", conversation_id, exc
            )
            raise SessionCreationError(conversation_id, exc) from exc

        self._handle = SessionHandle(conversation_id=conversation_id, session=session)
        logger.debug("[FMChat Session] New session bound to %s.", conversation_id)
        return self._handle

    def invalidate(self) -> None:
        if self._handle is not None:
            logger.debug(
                "[FMChat Session] Dropping session bound to %s.", self._handle.conversation_id
            )
        self._handle = None
