"""
Model boundary for fmchat.

``ModelBackend`` and ``ChatSession`` describe what the core needs from a
language model: an availability query, session construction, and a
streaming response that yields text snapshots. ``AppleFMBackend`` is the
production implementation on top of ``apple_fm_sdk``; tests and other
runtimes can plug in anything that satisfies the protocols.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .exceptions import require_apple_fm

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ChatSession(Protocol):
    """A stateful inference context."""

    def stream_response(self, prompt: str) -> AsyncIterator[str]: ...


@runtime_checkable
class ModelBackend(Protocol):
    """Capability check plus session factory.

    ``cumulative_snapshots`` is True when every streamed event carries the
    full text so far, False when events are deltas.
    """

    cumulative_snapshots: bool

    def is_available(self) -> tuple[bool, Any]: ...

    def create_session(self, instructions: str) -> ChatSession: ...


# ---------------------------------------------------------------------------
# Apple Foundation Models
# ---------------------------------------------------------------------------


def create_model() -> Any:
    """Instantiate the default ``SystemLanguageModel``."""
    fm = require_apple_fm("create_model")
    return fm.SystemLanguageModel()


def create_session(instructions: str, model: Any = None) -> Any:
    """Instantiate a ``LanguageModelSession`` bound to ``model``."""
    fm = require_apple_fm("create_session")
    if model is None:
        model = fm.SystemLanguageModel()
    return fm.LanguageModelSession(model=model, instructions=instructions)


class AppleFMSession:
    """Adapts ``LanguageModelSession.stream_response`` to plain string snapshots."""

    def __init__(self, session: Any) -> None:
        self.session = session

    async def stream_response(self, prompt: str) -> AsyncIterator[str]:
        async for snapshot in self.session.stream_response(prompt):
            yield str(snapshot)

    def __repr__(self) -> str:
        return f"AppleFMSession(session={self.session!r})"


class AppleFMBackend:
    """``ModelBackend`` backed by the on-device system language model."""

    cumulative_snapshots = True

    def __init__(self, model: Any = None) -> None:
        self.model = model if model is not None else create_model()

    def is_available(self) -> tuple[bool, Any]:
        return self.model.is_available()

    def create_session(self, instructions: str) -> AppleFMSession:
        return AppleFMSession(create_session(instructions, model=self.model))

    def __repr__(self) -> str:
        return f"AppleFMBackend(model={self.model!r})"
