"""
fmchat: a local-first chat client for Apple Foundation Models built on python-apple-fm-sdk

The core manages one model session per conversation, folds streamed response snapshots
into a stable conversation log, and persists history on-device. Front ends (the bundled
`fmchat` CLI or any UI) drive it through ``ConversationController``.
"""

from .availability import AvailabilityMonitor, AvailabilityState, UnavailableReason
from .config import ChatSettings
from .controller import ConversationController
from .exceptions import AppleFMSetupError, FMChatError, SessionCreationError
from .models import Conversation, Message, derive_title
from .protocols import AppleFMBackend, ChatSession, ModelBackend
from .reconciler import SendOutcome, StreamingReconciler
from .sessions import SessionHandle, SessionManager
from .store import ConversationStore

__all__ = [
    "AppleFMBackend",
    "AppleFMSetupError",
    "AvailabilityMonitor",
    "AvailabilityState",
    "ChatSession",
    "ChatSettings",
    "Conversation",
    "ConversationController",
    "ConversationStore",
    "FMChatError",
    "Message",
    "ModelBackend",
    "SendOutcome",
    "SessionCreationError",
    "SessionHandle",
    "SessionManager",
    "StreamingReconciler",
    "UnavailableReason",
    "derive_title",
]
