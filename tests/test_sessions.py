"""Tests for fmchat.sessions (SessionManager lifecycle)."""

import pytest

from fmchat.exceptions import SessionCreationError
from fmchat.sessions import SessionManager

from .conftest import FakeBackend


class TestSessionManager:
    def test_reuses_handle_for_same_conversation(self):
        backend = FakeBackend()
        manager = SessionManager(backend)

        first = manager.ensure_session("c1")
        second = manager.ensure_session("c1")

        assert first is second
        assert len(backend.created) == 1

    def test_new_conversation_replaces_handle(self):
        backend = FakeBackend()
        manager = SessionManager(backend)

        first = manager.ensure_session("c1")
        second = manager.ensure_session("c2")

        assert second.conversation_id == "c2"
        assert second.session is not first.session
        assert manager.handle is second

    def test_invalidate_forces_fresh_session(self):
        backend = FakeBackend()
        manager = SessionManager(backend)

        first = manager.ensure_session("c1")
        manager.invalidate()
        assert manager.handle is None
        second = manager.ensure_session("c1")

        assert second.session is not first.session
        assert len(backend.created) == 2

    def test_sessions_use_configured_instructions(self):
        backend = FakeBackend()
        manager = SessionManager(backend, instructions="Answer in haiku.")
        manager.ensure_session("c1")
        assert backend.instructions == ["Answer in haiku."]

    def test_creation_failure_raises_and_leaves_no_handle(self):
        backend = FakeBackend(create_error=RuntimeError("model assets missing"))
        manager = SessionManager(backend)

        with pytest.raises(SessionCreationError, match="model assets missing") as info:
            manager.ensure_session("c1")

        assert info.value.conversation_id == "c1"
        assert isinstance(info.value.cause, RuntimeError)
        assert manager.handle is None
