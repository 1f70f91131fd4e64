"""Models for the aiovoicechat channel and hub protocols."""

from __future__ import annotations

__all__ = [
    "AnswerMessage",
    "AudioChunkMessage",
    "AudioCodec",
    "ConnectionState",
    "HeartbeatMessage",
    "HubClientMessage",
    "HubServerMessage",
    "IceCandidateMessage",
    "IceCandidatePayload",
    "OfferMessage",
    "PeerState",
    "PlaybackState",
    "SessionDescription",
    "SignalingMessage",
    "TopicPurpose",
    "UserJoinedMessage",
    "UserLeftMessage",
    "hub",
    "signaling",
    "types",
]

from . import hub, signaling, types
from .signaling import (
    AnswerMessage,
    AudioChunkMessage,
    HeartbeatMessage,
    IceCandidateMessage,
    IceCandidatePayload,
    OfferMessage,
    SessionDescription,
    UserJoinedMessage,
    UserLeftMessage,
)
from .types import (
    AudioCodec,
    ConnectionState,
    HubClientMessage,
    HubServerMessage,
    PeerState,
    PlaybackState,
    SignalingMessage,
    TopicPurpose,
)
