"""Exceptions raised by aiovoicechat."""

from __future__ import annotations


class VoiceChatError(Exception):
    """Base class for all aiovoicechat errors."""


class MediaAccessError(VoiceChatError):
    """The microphone could not be opened (permission denied or no device)."""


class SignalingDeliveryError(VoiceChatError):
    """Subscribing to or publishing on a broadcast topic failed."""


class NegotiationError(VoiceChatError):
    """
    A peer negotiation step failed.

    Raised for malformed or unexpected offers, answers and candidates, and for
    state transitions the peer state machine does not allow. Only the peer the
    error belongs to is closed.
    """

    def __init__(self, user_id: str, message: str) -> None:
        """Initialize the error for the given remote user."""
        super().__init__(f"{user_id}: {message}")
        self.user_id = user_id


class DecodeError(VoiceChatError):
    """An audio fragment could not be decoded."""


class AlreadyInitializedError(VoiceChatError):
    """The capture device is already owned by another component."""
