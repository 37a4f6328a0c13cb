"""Shared fakes and fixtures for the fmchat test suite."""

from __future__ import annotations

import asyncio

import pytest

from fmchat.config import ChatSettings
from fmchat.controller import ConversationController
from fmchat.store import ConversationStore


class FakeSession:
    """Scripted ``ChatSession``: yields ``events`` then optionally raises ``error``.

    With ``pause_after=n`` the stream stops after the n-th event until
    ``release()`` is called; ``paused`` is set while it waits. With
    ``cancel_error`` set, a cancellation while paused surfaces as that error
    instead of ``CancelledError``.
    """

    def __init__(self, events=(), *, error=None, pause_after=None, cancel_error=None):
        self.events = list(events)
        self.error = error
        self.pause_after = pause_after
        self.cancel_error = cancel_error
        self.paused = asyncio.Event()
        self._gate = asyncio.Event()
        self.prompts: list[str] = []
        self.closed = False
        self.interrupted = False

    def release(self):
        self._gate.set()

    async def stream_response(self, prompt):
        self.prompts.append(prompt)
        try:
            for index, event in enumerate(self.events):
                if self.pause_after is not None and index == self.pause_after:
                    self.paused.set()
                    try:
                        await self._gate.wait()
                    except asyncio.CancelledError:
                        self.interrupted = True
                        if self.cancel_error is not None:
                            raise self.cancel_error from None
                        raise
                await asyncio.sleep(0)
                yield event
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class FakeBackend:
    """Scripted ``ModelBackend`` standing in for the Apple FM SDK."""

    cumulative_snapshots = True

    def __init__(self, *, available=True, reason=None, sessions=(), create_error=None):
        self.available = available
        self.reason = reason
        self.sessions = list(sessions)
        self.create_error = create_error
        self.created: list[FakeSession] = []
        self.instructions: list[str] = []
        self.availability_calls = 0

    def is_available(self):
        self.availability_calls += 1
        return self.available, self.reason

    def create_session(self, instructions):
        self.instructions.append(instructions)
        if self.create_error is not None:
            raise self.create_error
        session = self.sessions.pop(0) if self.sessions else FakeSession(["OK"])
        self.created.append(session)
        return session


class DeltaBackend(FakeBackend):
    cumulative_snapshots = False


@pytest.fixture
def settings(tmp_path):
    return ChatSettings(data_dir=tmp_path, first_chunk_timeout=None, idle_timeout=None)


@pytest.fixture
def store(settings):
    store = ConversationStore(settings.db_path)
    yield store
    store.close()


@pytest.fixture
def make_controller(settings):
    controllers = []

    def _make(backend=None, **overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        controller = ConversationController.open(backend or FakeBackend(), settings)
        controllers.append(controller)
        return controller

    yield _make
    for controller in controllers:
        controller.close()
