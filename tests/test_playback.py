from __future__ import annotations

import asyncio
import logging
import sys
import threading
import time
import types
from contextlib import suppress

import pytest

from aiovoicechat.codec import AudioFragment, DecodedAudio
from aiovoicechat.models.types import PlaybackState
from aiovoicechat.playback import AudioPlaybackQueue, NullAudioSink, SoundDeviceSink

from fakes import RecordingSink, passthrough_decoder, wait_for


def _fragment(index: int, payload: bytes | None = None) -> AudioFragment:
    return AudioFragment(
        payload=payload if payload is not None else bytes([index]) * 4,
        produced_at_ms=1000 + index,
        producer_user_id="userY",
        codec="pcm",
        sequence=index,
    )


@pytest.mark.asyncio
async def test_fragments_play_one_at_a_time_in_arrival_order() -> None:
    sink = RecordingSink()
    queue = AudioPlaybackQueue(sink, decoder=passthrough_decoder)
    played: list[int | None] = []
    queue.add_played_listener(lambda fragment, audio: played.append(fragment.sequence))

    assert queue.state is PlaybackState.IDLE
    for index in range(5):
        queue.enqueue(_fragment(index))
    assert queue.state is PlaybackState.PLAYING

    await asyncio.sleep(0.003)
    for index in range(5, 10):
        queue.enqueue(_fragment(index))

    await asyncio.wait_for(queue.wait_idle(), timeout=2)
    assert played == list(range(10))
    assert [audio.pcm for audio in sink.played] == [bytes([index]) * 4 for index in range(10)]
    assert sink.max_active == 1
    assert queue.state is PlaybackState.IDLE
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_decode_error_does_not_stop_the_queue(caplog: pytest.LogCaptureFixture) -> None:
    sink = RecordingSink()
    queue = AudioPlaybackQueue(sink, decoder=passthrough_decoder)
    played: list[int | None] = []
    dropped: list[int | None] = []
    queue.add_played_listener(lambda fragment, audio: played.append(fragment.sequence))
    queue.add_dropped_listener(lambda fragment, error: dropped.append(fragment.sequence))

    with caplog.at_level(logging.ERROR):
        queue.enqueue(_fragment(0))
        queue.enqueue(_fragment(1, b"corrupt"))
        queue.enqueue(_fragment(2))
        await asyncio.wait_for(queue.wait_idle(), timeout=2)

    assert played == [0, 2]
    assert dropped == [1]
    assert any("undecodable" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_sink_failure_is_logged_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    class FlakySink(RecordingSink):
        async def play(self, audio: DecodedAudio) -> None:
            if audio.pcm == b"boom":
                raise OSError("device gone")
            await super().play(audio)

    queue = AudioPlaybackQueue(FlakySink(), decoder=passthrough_decoder)
    played: list[int | None] = []
    queue.add_played_listener(lambda fragment, audio: played.append(fragment.sequence))

    with caplog.at_level(logging.ERROR):
        queue.enqueue(_fragment(0, b"boom"))
        queue.enqueue(_fragment(1))
        await asyncio.wait_for(queue.wait_idle(), timeout=2)

    assert played == [1]
    assert any(record.exc_info for record in caplog.records)


@pytest.mark.asyncio
async def test_clear_cancels_current_and_pending() -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class BlockingSink(RecordingSink):
        async def play(self, audio: DecodedAudio) -> None:
            started.set()
            await release.wait()
            await super().play(audio)

    sink = BlockingSink()
    queue = AudioPlaybackQueue(sink, decoder=passthrough_decoder)
    for index in range(3):
        queue.enqueue(_fragment(index))
    await asyncio.wait_for(started.wait(), timeout=2)
    assert queue.current is not None
    assert queue.pending == 2

    queue.clear()
    assert queue.state is PlaybackState.IDLE
    assert queue.pending == 0
    assert queue.current is None
    release.set()
    await asyncio.sleep(0.01)
    assert sink.played == []

    # The queue is usable again after clearing
    queue.enqueue(_fragment(7))
    await asyncio.wait_for(queue.wait_idle(), timeout=2)
    assert [audio.pcm for audio in sink.played] == [bytes([7]) * 4]


@pytest.mark.asyncio
async def test_backlog_drops_oldest_pending(caplog: pytest.LogCaptureFixture) -> None:
    sink = RecordingSink()
    queue = AudioPlaybackQueue(sink, decoder=passthrough_decoder, max_pending=2)
    dropped: list[tuple[AudioFragment, Exception]] = []
    queue.add_dropped_listener(lambda fragment, error: dropped.append((fragment, error)))
    played: list[int | None] = []
    queue.add_played_listener(lambda fragment, audio: played.append(fragment.sequence))

    with caplog.at_level(logging.WARNING):
        for index in range(4):
            queue.enqueue(_fragment(index))
        await asyncio.wait_for(queue.wait_idle(), timeout=2)

    assert played == [2, 3]
    assert [fragment.sequence for fragment, _ in dropped] == [0, 1]
    assert all(isinstance(error, OverflowError) for _, error in dropped)
    assert any("backlog" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_listener_removal_and_errors() -> None:
    queue = AudioPlaybackQueue(NullAudioSink(paced=False), decoder=passthrough_decoder)
    calls: list[int | None] = []

    def _broken(fragment: AudioFragment, audio: DecodedAudio) -> None:
        raise RuntimeError("listener bug")

    queue.add_played_listener(_broken)
    remove = queue.add_played_listener(lambda fragment, audio: calls.append(fragment.sequence))
    queue.enqueue(_fragment(0))
    await wait_for(lambda: calls == [0])

    remove()
    remove()
    queue.enqueue(_fragment(1))
    await asyncio.wait_for(queue.wait_idle(), timeout=2)
    assert calls == [0]


@pytest.mark.asyncio
async def test_sound_device_writes_never_overlap(monkeypatch: pytest.MonkeyPatch) -> None:
    guard = threading.Lock()
    writes: list[bytes] = []
    overlap = {"active": 0, "max": 0}

    class FakeOutputStream:
        def __init__(self, **kwargs: object) -> None:
            self.kwargs = kwargs
            self.closed = False

        def start(self) -> None:
            pass

        def write(self, data: bytes) -> bool:
            with guard:
                overlap["active"] += 1
                overlap["max"] = max(overlap["max"], overlap["active"])
            time.sleep(0.05)
            with guard:
                overlap["active"] -= 1
            writes.append(data)
            return False

        def stop(self) -> None:
            pass

        def close(self) -> None:
            self.closed = True

    monkeypatch.setitem(
        sys.modules, "sounddevice", types.SimpleNamespace(RawOutputStream=FakeOutputStream)
    )
    sink = SoundDeviceSink()
    first = DecodedAudio(pcm=b"\x01\x00" * 480, sample_rate=48000, channels=1)
    second = DecodedAudio(pcm=b"\x02\x00" * 480, sample_rate=48000, channels=1)

    # A cleared queue cancels play() while the write is still running in its thread
    playing = asyncio.ensure_future(sink.play(first))
    await wait_for(lambda: overlap["active"] == 1)
    playing.cancel()
    with suppress(asyncio.CancelledError):
        await playing

    await sink.play(second)
    assert writes == [first.pcm, second.pcm]
    assert overlap["max"] == 1
    await sink.close()
