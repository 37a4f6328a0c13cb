"""Exception types and Apple FM setup guards for fmchat."""

from __future__ import annotations

import importlib
from typing import Any

_INSTALL_HINT = (
    "fmchat drives Apple Foundation Models through 'apple-fm-sdk', which must be "
    "installed manually on macOS 26+ with Apple Intelligence enabled.\n"
    "See: https://github.com/apple/python-apple-fm-sdk"
)


class FMChatError(Exception):
    """Base class for fmchat errors."""


class AppleFMSetupError(FMChatError):
    """Raised when the Apple FM SDK is missing or the model cannot be used."""


class SessionCreationError(FMChatError):
    """Raised when a model session cannot be constructed for a conversation."""

    def __init__(self, conversation_id: str, cause: BaseException | None = None):
        self.conversation_id = conversation_id
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Could not start a model session{detail}")


def require_apple_fm(context: str = "fmchat") -> Any:
    """Import and return ``apple_fm_sdk`` or raise ``AppleFMSetupError``."""
    try:
        return importlib.import_module("apple_fm_sdk")
    except ImportError as exc:
        raise AppleFMSetupError(
            f"[{context}] 'apple-fm-sdk' is not installed.\n{_INSTALL_HINT}"
        ) from exc

