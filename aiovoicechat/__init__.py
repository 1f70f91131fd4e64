"""Asyncio voice chat over broadcast channels, with direct peer audio and a fragment fallback."""

from .base import BaseVoiceSession, SessionHandle, UserDirectory
from .capture import CaptureDevice, CaptureSource, CaptureStream, GatedAudioTrack, MicrophoneSource
from .codec import AudioFragment, DecodedAudio
from .config import VoiceChatConfig
from .errors import (
    AlreadyInitializedError,
    DecodeError,
    MediaAccessError,
    NegotiationError,
    SignalingDeliveryError,
    VoiceChatError,
)
from .fallback import ChunkedAudioTransport
from .models.types import AudioCodec, ConnectionState, PeerState, PlaybackState, TopicPurpose
from .playback import AudioPlaybackQueue, AudioSink, NullAudioSink, SoundDeviceSink
from .session import PeerAudioSession
from .signaling import SignalingChannel
from .util import topic_name

__all__ = [
    "AlreadyInitializedError",
    "AudioCodec",
    "AudioFragment",
    "AudioPlaybackQueue",
    "AudioSink",
    "BaseVoiceSession",
    "CaptureDevice",
    "CaptureSource",
    "CaptureStream",
    "ChunkedAudioTransport",
    "ConnectionState",
    "DecodeError",
    "DecodedAudio",
    "GatedAudioTrack",
    "MediaAccessError",
    "MicrophoneSource",
    "NegotiationError",
    "NullAudioSink",
    "PeerAudioSession",
    "PeerState",
    "PlaybackState",
    "SessionHandle",
    "SignalingChannel",
    "SignalingDeliveryError",
    "SoundDeviceSink",
    "TopicPurpose",
    "UserDirectory",
    "VoiceChatConfig",
    "VoiceChatError",
    "topic_name",
]
