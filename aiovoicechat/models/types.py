"""Base message classes and enum types used by aiovoicechat."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class SignalingMessage(DataClassORJSONMixin):
    """Base class for messages exchanged on a channel topic."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="event", include_subtypes=True)
        serialize_by_alias = True
        omit_none = True

    @property
    def sender_id(self) -> str | None:
        """Return the user that published this message, if known."""
        raise NotImplementedError

    @property
    def target_id(self) -> str | None:
        """Return the user this message is meant for, or None for everyone."""
        return None


@dataclass
class HubClientMessage(DataClassORJSONMixin):
    """Base class for messages sent from a transport client to the hub."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass
class HubServerMessage(DataClassORJSONMixin):
    """Base class for messages sent from the hub to a transport client."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class TopicPurpose(Enum):
    """Namespace of a broadcast topic."""

    VOICE = "voice"
    """Signaling for direct peer connections."""
    AUDIO = "audio"
    """Base64 audio fragments of the fallback path."""


class AudioCodec(Enum):
    """Enum for fragment audio codecs."""

    OPUS = "opus"
    """Opus in an Ogg container."""
    FLAC = "flac"
    """Native FLAC stream."""
    PCM = "pcm"
    """Signed 16-bit PCM in a WAV container."""


class ConnectionState(Enum):
    """Overall state of a voice session as shown to the UI."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class PeerState(Enum):
    """Negotiation state of a single peer connection."""

    NEW = "new"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_SENT = "answer-sent"
    ANSWER_RECEIVED = "answer-received"
    CONNECTED = "connected"
    CLOSED = "closed"


class PlaybackState(Enum):
    """State of an audio playback queue."""

    IDLE = "idle"
    PLAYING = "playing"
