"""Configuration for voice sessions."""

from __future__ import annotations

from dataclasses import dataclass, field

from aiovoicechat.models.types import AudioCodec

DEFAULT_ICE_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


@dataclass(frozen=True)
class VoiceChatConfig:
    """Tunables shared by the peer session and the chunked fallback transport."""

    sample_rate: int = 48000
    """Sample rate in Hz of captured and played audio."""
    channels: int = 1
    """Number of audio channels (1=mono, 2=stereo)."""
    fragment_duration_ms: int = 100
    """Length of one broadcast fragment on the fallback path."""
    fragment_codec: AudioCodec = AudioCodec.OPUS
    """Codec used to encode fallback fragments."""
    ice_servers: tuple[str, ...] = field(default=DEFAULT_ICE_SERVERS)
    """STUN/TURN urls handed to every peer connection."""
    negotiation_timeout_s: float = 15.0
    """Seconds a peer may take to reach the connected state before it is closed."""
    heartbeat_interval_s: float = 10.0
    """Seconds between presence heartbeats."""
    presence_timeout_s: float = 30.0
    """
    Seconds without any traffic after which a remote user is evicted.

    Set to 0 to keep users until they announce their departure.
    """
    signaling_retry_backoff_s: float = 0.5
    """Delay before the single retry of a failed subscribe or send."""
    playback_max_pending: int = 50
    """Maximum number of fragments waiting in the playback queue."""

    def __post_init__(self) -> None:
        """Validate the configuration."""
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if not 10 <= self.fragment_duration_ms <= 1000:
            raise ValueError("fragment_duration_ms must be between 10 and 1000")
        if self.fragment_codec is AudioCodec.OPUS and self.sample_rate != 48000:
            raise ValueError("opus fragments require a sample_rate of 48000")
        if self.negotiation_timeout_s <= 0:
            raise ValueError("negotiation_timeout_s must be positive")
        if self.heartbeat_interval_s <= 0:
            raise ValueError("heartbeat_interval_s must be positive")
        if self.presence_timeout_s < 0:
            raise ValueError("presence_timeout_s must not be negative")
        if 0 < self.presence_timeout_s <= self.heartbeat_interval_s:
            raise ValueError("presence_timeout_s must be larger than heartbeat_interval_s")
        if self.signaling_retry_backoff_s < 0:
            raise ValueError("signaling_retry_backoff_s must not be negative")
        if self.playback_max_pending <= 0:
            raise ValueError("playback_max_pending must be positive")

    @property
    def fragment_samples(self) -> int:
        """Return the number of samples per channel in one fragment."""
        return self.sample_rate * self.fragment_duration_ms // 1000
