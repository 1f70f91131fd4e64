"""
Channel messages for voice signaling and fragment audio.

Every participant of a channel publishes and receives these messages on the
channel's broadcast topics. The topic is shared, so a message reaches every
subscriber; messages addressed to a single user carry ``toUserId`` and all
other receivers must ignore them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Alias

from .types import SignalingMessage

_SDP_TYPES = ("offer", "answer", "pranswer", "rollback")


@dataclass
class SessionDescription(DataClassORJSONMixin):
    """Session description exchanged during negotiation."""

    type: str
    """Description type ('offer' or 'answer')."""
    sdp: str
    """The SDP body."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.type not in _SDP_TYPES:
            raise ValueError(f"Unknown session description type: {self.type!r}")
        if not self.sdp:
            raise ValueError("sdp must not be empty")


@dataclass
class IceCandidatePayload(DataClassORJSONMixin):
    """A network candidate in the shape browsers produce."""

    candidate: str
    """Candidate line, with or without the leading 'candidate:'."""
    sdp_mid: Annotated[str | None, Alias("sdpMid")] = None
    """Media stream identification tag the candidate belongs to."""
    sdp_mline_index: Annotated[int | None, Alias("sdpMLineIndex")] = None
    """Index of the media description the candidate belongs to."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


# Presence
@dataclass
class UserJoinedMessage(SignalingMessage):
    """A user joined the channel."""

    user_id: Annotated[str, Alias("userId")]
    event: Literal["user-joined"] = "user-joined"

    @property
    def sender_id(self) -> str | None:
        """Return the joining user."""
        return self.user_id


@dataclass
class UserLeftMessage(SignalingMessage):
    """A user left the channel."""

    user_id: Annotated[str, Alias("userId")]
    event: Literal["user-left"] = "user-left"

    @property
    def sender_id(self) -> str | None:
        """Return the leaving user."""
        return self.user_id


@dataclass
class HeartbeatMessage(SignalingMessage):
    """Periodic liveness signal of a user that is still in the channel."""

    user_id: Annotated[str, Alias("userId")]
    event: Literal["heartbeat"] = "heartbeat"

    @property
    def sender_id(self) -> str | None:
        """Return the user that is alive."""
        return self.user_id


# Negotiation
@dataclass
class OfferMessage(SignalingMessage):
    """Connection offer from one user to another."""

    offer: SessionDescription
    from_user_id: Annotated[str, Alias("fromUserId")]
    to_user_id: Annotated[str | None, Alias("toUserId")] = None
    event: Literal["offer"] = "offer"

    @property
    def sender_id(self) -> str | None:
        """Return the offering user."""
        return self.from_user_id

    @property
    def target_id(self) -> str | None:
        """Return the user the offer is for."""
        return self.to_user_id


@dataclass
class AnswerMessage(SignalingMessage):
    """Answer to a previously received offer."""

    answer: SessionDescription
    to_user_id: Annotated[str, Alias("toUserId")]
    from_user_id: Annotated[str | None, Alias("fromUserId")] = None
    """Answering user; older clients leave it out."""
    event: Literal["answer"] = "answer"

    @property
    def sender_id(self) -> str | None:
        """Return the answering user, if it was included."""
        return self.from_user_id

    @property
    def target_id(self) -> str | None:
        """Return the user that sent the offer."""
        return self.to_user_id


@dataclass
class IceCandidateMessage(SignalingMessage):
    """Network candidate for an ongoing negotiation."""

    candidate: IceCandidatePayload
    from_user_id: Annotated[str, Alias("fromUserId")]
    to_user_id: Annotated[str | None, Alias("toUserId")] = None
    event: Literal["ice-candidate"] = "ice-candidate"

    @property
    def sender_id(self) -> str | None:
        """Return the user the candidate belongs to."""
        return self.from_user_id

    @property
    def target_id(self) -> str | None:
        """Return the user that should apply the candidate."""
        return self.to_user_id


# Fallback audio
@dataclass
class AudioChunkMessage(SignalingMessage):
    """One encoded audio fragment of the chunked fallback path."""

    audio_data: Annotated[str, Alias("audioData")]
    """Base64 encoded fragment."""
    user_id: Annotated[str, Alias("userId")]
    """Producer of the fragment."""
    timestamp: int
    """Capture time in milliseconds since the epoch."""
    sequence: int | None = None
    """Per-producer fragment counter, starting at 0."""
    codec: str | None = None
    """Fragment encoding; receivers assume 'opus' when missing."""
    event: Literal["audio-chunk"] = "audio-chunk"

    @property
    def sender_id(self) -> str | None:
        """Return the producer of the fragment."""
        return self.user_id
