"""Classification of model availability into actionable states."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Any

from .protocols import ModelBackend

logger = logging.getLogger("fmchat")


class UnavailableReason(enum.Enum):
    MODEL_DOWNLOADING = "model_downloading"
    DEVICE_INELIGIBLE = "device_ineligible"
    FEATURE_DISABLED = "feature_disabled"
    UNKNOWN = "unknown"

    @property
    def title(self) -> str:
        return _TITLES[self]

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_TITLES = {
    UnavailableReason.MODEL_DOWNLOADING: "Model Downloading",
    UnavailableReason.DEVICE_INELIGIBLE: "Device Not Supported",
    UnavailableReason.FEATURE_DISABLED: "Apple Intelligence Disabled",
    UnavailableReason.UNKNOWN: "Unavailable",
}

_MESSAGES = {
    UnavailableReason.MODEL_DOWNLOADING: (
        "The on-device AI model is being downloaded. This may take a few minutes."
    ),
    UnavailableReason.DEVICE_INELIGIBLE: (
        "This device doesn't support Apple Intelligence. You need an iPhone 15 Pro or "
        "later, or a Mac/iPad with M1 chip or later."
    ),
    UnavailableReason.FEATURE_DISABLED: (
        "Apple Intelligence is not enabled. Please go to Settings → Apple Intelligence "
        "& Siri to enable it."
    ),
    UnavailableReason.UNKNOWN: "The on-device AI model is currently unavailable.",
}

# Normalized substrings of SDK reason names, checked in order.
_REASON_PATTERNS = (
    ("modelnotready", UnavailableReason.MODEL_DOWNLOADING),
    ("devicenoteligible", UnavailableReason.DEVICE_INELIGIBLE),
    ("appleintelligencenotenabled", UnavailableReason.FEATURE_DISABLED),
)


def classify_reason(raw: Any) -> UnavailableReason:
    """Map an SDK unavailability reason (enum member or string) to ``UnavailableReason``."""
    if isinstance(raw, UnavailableReason):
        return raw
    if raw is None:
        return UnavailableReason.UNKNOWN
    name = getattr(raw, "name", None) or str(raw)
    key = re.sub(r"[^a-z]", "", str(name).lower())
    for pattern, reason in _REASON_PATTERNS:
        if pattern in key:
            return reason
    return UnavailableReason.UNKNOWN


@dataclass(frozen=True)
class AvailabilityState:
    available: bool
    reason: UnavailableReason | None = None

    @property
    def message(self) -> str | None:
        return None if self.reason is None else self.reason.message

    @classmethod
    def ready(cls) -> AvailabilityState:
        return cls(available=True)

    @classmethod
    def unavailable(cls, reason: UnavailableReason) -> AvailabilityState:
        return cls(available=False, reason=reason)


class AvailabilityMonitor:
    """Queries the backend and keeps the latest classified state."""

    def __init__(self, backend: ModelBackend) -> None:
        self.backend = backend
        self.state: AvailabilityState | None = None

    @property
    def is_available(self) -> bool:
        return self.state is not None and self.state.available

    @property
    def message(self) -> str | None:
        return None if self.state is None else self.state.message

    def check(self) -> AvailabilityState:
        try:
            available, raw_reason = self.backend.is_available()
        except Exception:
            logger.warning("[FMChat Availability] Capability query failed.", exc_info=True)
            state = AvailabilityState.unavailable(UnavailableReason.UNKNOWN)
        else:
            if available:
                state = AvailabilityState.ready()
            else:
                state = AvailabilityState.unavailable(classify_reason(raw_reason))

        if state != self.state:
            logger.info(
                "[FMChat Availability] Model %s.",
                "available" if state.available else f"unavailable ({state.reason.value})",
            )
        self.state = state
        return state
