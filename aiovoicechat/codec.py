"""Encoding and decoding of fallback audio fragments."""

from __future__ import annotations

import io
import logging
import types
from dataclasses import dataclass
from fractions import Fraction
from typing import TYPE_CHECKING

from aiovoicechat.errors import DecodeError
from aiovoicechat.models.types import AudioCodec

if TYPE_CHECKING:
    import av

logger = logging.getLogger(__name__)

BYTES_PER_SAMPLE = 2
"""Fragments and decoded audio are always signed 16-bit."""

# codec -> (container format, encoder name)
_CONTAINERS: dict[AudioCodec, tuple[str, str]] = {
    AudioCodec.OPUS: ("ogg", "libopus"),
    AudioCodec.FLAC: ("flac", "flac"),
    AudioCodec.PCM: ("wav", "pcm_s16le"),
}


def _get_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


def _layout(channels: int) -> str:
    return "mono" if channels == 1 else "stereo"


@dataclass(frozen=True)
class AudioFragment:
    """A received fragment waiting for decode and playback."""

    payload: bytes
    """Encoded fragment, as produced by encode_fragment()."""
    produced_at_ms: int
    """Capture time reported by the producer."""
    producer_user_id: str
    """User that produced the fragment."""
    codec: str = AudioCodec.OPUS.value
    """Encoding announced by the producer."""
    sequence: int | None = None
    """Producer-side counter, None for producers that do not send one."""


@dataclass(frozen=True)
class DecodedAudio:
    """Interleaved signed 16-bit PCM."""

    pcm: bytes
    sample_rate: int
    channels: int

    @property
    def frame_count(self) -> int:
        """Return the number of samples per channel."""
        return len(self.pcm) // (BYTES_PER_SAMPLE * self.channels)

    @property
    def duration_s(self) -> float:
        """Return the playback duration in seconds."""
        return self.frame_count / self.sample_rate


def parse_codec(value: str | None) -> AudioCodec:
    """
    Return the codec named by a fragment's codec field.

    Raises:
        DecodeError: If the codec is not supported.
    """
    if value is None:
        return AudioCodec.OPUS
    try:
        return AudioCodec(value)
    except ValueError as err:
        raise DecodeError(f"Unsupported fragment encoding: {value!r}") from err


def encode_fragment(pcm: bytes, codec: AudioCodec, sample_rate: int, channels: int) -> bytes:
    """
    Encode interleaved s16 PCM into a self-contained fragment.

    Every fragment carries its own container header, so a receiver can decode
    it without having seen any earlier fragment.
    """
    av = _get_av()
    container_format, codec_name = _CONTAINERS[codec]
    samples = len(pcm) // (BYTES_PER_SAMPLE * channels)
    if samples == 0:
        raise ValueError("Cannot encode an empty fragment")

    frame = av.AudioFrame(format="s16", layout=_layout(channels), samples=samples)
    frame.planes[0].update(pcm[: samples * BYTES_PER_SAMPLE * channels])
    frame.sample_rate = sample_rate
    frame.pts = 0
    frame.time_base = Fraction(1, sample_rate)

    buffer = io.BytesIO()
    with av.open(buffer, mode="w", format=container_format) as container:
        stream = container.add_stream(codec_name, rate=sample_rate)
        stream.codec_context.layout = _layout(channels)
        stream.codec_context.format = "s16"
        for packet in stream.encode(frame):
            container.mux(packet)
        for packet in stream.encode(None):
            container.mux(packet)
    return buffer.getvalue()


def decode_fragment(fragment: AudioFragment, sample_rate: int, channels: int) -> DecodedAudio:
    """
    Decode a fragment to PCM in the requested format.

    Raises:
        DecodeError: If the payload is empty, corrupt or uses an unsupported codec.
    """
    codec = parse_codec(fragment.codec)
    if not fragment.payload:
        raise DecodeError("Empty fragment")

    av = _get_av()
    container_format, _ = _CONTAINERS[codec]
    converter = PcmConverter(sample_rate, channels)
    pcm = bytearray()
    try:
        with av.open(io.BytesIO(fragment.payload), mode="r", format=container_format) as container:
            if not container.streams.audio:
                raise DecodeError("Fragment contains no audio stream")
            for frame in container.decode(audio=0):
                pcm += converter.convert(frame)
        pcm += converter.flush()
    except (av.error.FFmpegError, ValueError, EOFError) as err:
        raise DecodeError(f"Corrupt {codec.value} fragment: {err}") from err
    if not pcm:
        raise DecodeError("Fragment contains no samples")
    return DecodedAudio(pcm=bytes(pcm), sample_rate=sample_rate, channels=channels)


class PcmConverter:
    """Convert av.AudioFrame objects of any layout and rate to interleaved s16 PCM."""

    def __init__(self, sample_rate: int, channels: int) -> None:
        """Create a converter producing the given output format."""
        av = _get_av()
        self._resampler: av.AudioResampler = av.AudioResampler(  # type: ignore[name-defined]
            format="s16",
            layout=_layout(channels),
            rate=sample_rate,
        )
        self._frame_stride = BYTES_PER_SAMPLE * channels

    def convert(self, frame: av.AudioFrame) -> bytes:
        """Resample one frame and return its PCM bytes."""
        return self._collect(self._resampler.resample(frame))

    def flush(self) -> bytes:
        """Return samples still buffered inside the resampler."""
        return self._collect(self._resampler.resample(None))

    def _collect(self, frames: list[av.AudioFrame | None]) -> bytes:
        output = bytearray()
        for out_frame in frames:
            # A passthrough resampler echoes the None used for flushing
            if out_frame is None:
                continue
            expected = self._frame_stride * out_frame.samples
            output += bytes(out_frame.planes[0])[:expected]
        return bytes(output)


class FragmentEncoder:
    """Slice a stream of captured frames into fixed-duration encoded fragments."""

    def __init__(
        self,
        codec: AudioCodec,
        sample_rate: int,
        channels: int,
        fragment_samples: int,
    ) -> None:
        """
        Create an encoder.

        Args:
            codec: Codec of the produced fragments.
            sample_rate: Output sample rate in Hz.
            channels: Output channel count.
            fragment_samples: Samples per channel in one fragment.
        """
        self._codec = codec
        self._sample_rate = sample_rate
        self._channels = channels
        self._fragment_bytes = fragment_samples * BYTES_PER_SAMPLE * channels
        self._converter = PcmConverter(sample_rate, channels)
        self._buffer = bytearray()

    @property
    def buffered_bytes(self) -> int:
        """Return the number of PCM bytes waiting for a full fragment."""
        return len(self._buffer)

    def push(self, frame: av.AudioFrame) -> list[bytes]:
        """Add a captured frame and return every fragment it completed."""
        self._buffer += self._converter.convert(frame)
        fragments: list[bytes] = []
        while len(self._buffer) >= self._fragment_bytes:
            pcm = bytes(self._buffer[: self._fragment_bytes])
            del self._buffer[: self._fragment_bytes]
            fragments.append(
                encode_fragment(pcm, self._codec, self._sample_rate, self._channels)
            )
        return fragments

    def reset(self) -> None:
        """Discard any partially collected fragment."""
        self._buffer.clear()
