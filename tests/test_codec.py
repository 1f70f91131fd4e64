from __future__ import annotations

import math
import struct

import av
import pytest

from aiovoicechat.codec import (
    AudioFragment,
    FragmentEncoder,
    decode_fragment,
    encode_fragment,
    parse_codec,
)
from aiovoicechat.errors import DecodeError
from aiovoicechat.models.types import AudioCodec


def _tone(samples: int, sample_rate: int = 48000) -> bytes:
    return b"".join(
        struct.pack("<h", int(8000 * math.sin(2 * math.pi * 440 * n / sample_rate)))
        for n in range(samples)
    )


def _fragment(payload: bytes, codec: str) -> AudioFragment:
    return AudioFragment(payload=payload, produced_at_ms=0, producer_user_id="userY", codec=codec)


def test_pcm_fragment_decodes_to_the_same_samples() -> None:
    pcm = _tone(4800)
    payload = encode_fragment(pcm, AudioCodec.PCM, 48000, 1)
    assert payload[:4] == b"RIFF"

    decoded = decode_fragment(_fragment(payload, "pcm"), 48000, 1)
    assert decoded.pcm == pcm
    assert decoded.frame_count == 4800
    assert decoded.duration_s == pytest.approx(0.1)


def test_opus_fragment_is_self_contained() -> None:
    payload = encode_fragment(_tone(4800), AudioCodec.OPUS, 48000, 1)
    assert payload[:4] == b"OggS"

    decoded = decode_fragment(_fragment(payload, "opus"), 48000, 1)
    assert decoded.channels == 1
    assert 0.05 < decoded.duration_s < 0.15


def test_decode_errors() -> None:
    with pytest.raises(DecodeError):
        decode_fragment(_fragment(b"", "pcm"), 48000, 1)
    with pytest.raises(DecodeError):
        decode_fragment(_fragment(b"definitely not audio", "pcm"), 48000, 1)
    with pytest.raises(DecodeError):
        decode_fragment(_fragment(b"RIFF", "mp3"), 48000, 1)


def test_parse_codec_defaults_to_opus() -> None:
    assert parse_codec(None) is AudioCodec.OPUS
    assert parse_codec("flac") is AudioCodec.FLAC
    with pytest.raises(DecodeError):
        parse_codec("aac")


def test_fragment_encoder_slices_fixed_durations() -> None:
    encoder = FragmentEncoder(AudioCodec.PCM, 48000, 1, fragment_samples=4800)
    fragments: list[bytes] = []
    for _ in range(11):
        frame = av.AudioFrame(format="s16", layout="mono", samples=960)
        frame.planes[0].update(_tone(960))
        frame.sample_rate = 48000
        fragments.extend(encoder.push(frame))

    assert len(fragments) == 2
    assert encoder.buffered_bytes == 960 * 2
    for payload in fragments:
        decoded = decode_fragment(_fragment(payload, "pcm"), 48000, 1)
        assert decoded.frame_count == 4800

    encoder.reset()
    assert encoder.buffered_bytes == 0
