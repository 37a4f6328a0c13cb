"""Entry point for front ends: create, select, delete, rename and send."""

from __future__ import annotations

import logging
from collections.abc import Callable

from .availability import AvailabilityMonitor, AvailabilityState
from .config import ChatSettings
from .models import Conversation
from .protocols import ModelBackend
from .reconciler import SendOutcome, StreamingReconciler
from .sessions import SessionManager
from .store import ConversationStore

logger = logging.getLogger("fmchat")

Listener = Callable[["ConversationController"], None]


class ConversationController:
    """
    Owns conversation state for one front end.

    All methods must be called from a single event loop. Listeners are
    invoked synchronously after every observable change (collection,
    current conversation, generating flag, error message, streamed text).
    """

    def __init__(
        self,
        backend: ModelBackend,
        store: ConversationStore,
        settings: ChatSettings | None = None,
    ) -> None:
        settings = settings or ChatSettings()
        self.settings = settings
        self.store = store
        self.monitor = AvailabilityMonitor(backend)
        self.sessions = SessionManager(backend, instructions=settings.instructions)
        self.reconciler = StreamingReconciler(
            store,
            self.sessions,
            self.monitor,
            first_chunk_timeout=settings.first_chunk_timeout,
            idle_timeout=settings.idle_timeout,
            on_change=self._notify,
        )
        self._listeners: list[Listener] = []

        conversations = self.store.load()
        self.current_id: str | None = conversations[0].id if conversations else None
        self.check_availability()

    @classmethod
    def open(
        cls, backend: ModelBackend, settings: ChatSettings | None = None
    ) -> ConversationController:
        """Build a controller with a store at ``settings.db_path``."""
        settings = settings or ChatSettings()
        return cls(backend, ConversationStore(settings.db_path), settings=settings)

    # -- observable state ----------------------------------------------------

    @property
    def conversations(self) -> list[Conversation]:
        return list(self.store.conversations)

    @property
    def current_conversation(self) -> Conversation | None:
        if self.current_id is None:
            return None
        return self.store.get(self.current_id)

    @property
    def is_generating(self) -> bool:
        return self.reconciler.is_generating

    @property
    def error_message(self) -> str | None:
        return self.reconciler.error_message

    @property
    def availability(self) -> AvailabilityState | None:
        return self.monitor.state

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.warning("[FMChat Controller] Listener %r failed.", listener, exc_info=True)

    # -- operations ----------------------------------------------------------

    def check_availability(self) -> AvailabilityState:
        state = self.monitor.check()
        self.reconciler.error_message = state.message
        self._notify()
        return state

    def clear_error(self) -> None:
        self.reconciler.error_message = None
        self._notify()

    def create_conversation(self) -> Conversation:
        conversation = Conversation()
        self.reconciler.cancel_all(except_id=conversation.id)
        self.store.insert_front(conversation)
        self.current_id = conversation.id
        self.sessions.invalidate()
        self.store.save()
        self._notify()
        return conversation

    def select_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self.store.get(conversation_id)
        if conversation is None:
            logger.warning(
                "[FMChat Controller] Cannot select unknown conversation %s.", conversation_id
            )
            return None
        if conversation_id == self.current_id:
            return conversation

        self.reconciler.cancel_all(except_id=conversation_id)
        self.current_id = conversation_id
        self.sessions.invalidate()
        self._notify()
        return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        self.reconciler.cancel(conversation_id)
        removed = self.store.remove(conversation_id)
        if removed is None:
            logger.warning(
                "[FMChat Controller] Cannot delete unknown conversation %s.", conversation_id
            )
            return False

        handle = self.sessions.handle
        if handle is not None and handle.conversation_id == conversation_id:
            self.sessions.invalidate()
        if self.current_id == conversation_id:
            remaining = self.store.conversations
            self.current_id = remaining[0].id if remaining else None
        self.store.save()
        self._notify()
        return True

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        conversation = self.store.get(conversation_id)
        if conversation is None:
            logger.warning(
                "[FMChat Controller] Cannot rename unknown conversation %s.", conversation_id
            )
            return False
        conversation.rename(title)
        self.store.upsert(conversation)
        self.store.save()
        self._notify()
        return True

    async def send(self, text: str) -> SendOutcome:
        """Send ``text`` in the current conversation, creating one if needed."""
        if not text.strip():
            return SendOutcome.IGNORED

        conversation = self.current_conversation
        if conversation is None:
            if not self.check_availability().available:
                return SendOutcome.UNAVAILABLE
            conversation = self.create_conversation()

        return await self.reconciler.send(conversation, text)

    def close(self) -> None:
        self.reconciler.cancel_all()
        self.store.close()
