from __future__ import annotations

import asyncio

import pytest
from aiortc.mediastreams import AudioStreamTrack

from aiovoicechat.capture import CaptureDevice, GatedAudioTrack
from aiovoicechat.errors import AlreadyInitializedError, MediaAccessError

from fakes import FakeCaptureSource


@pytest.mark.asyncio
async def test_capture_lease_has_one_owner() -> None:
    source = FakeCaptureSource()
    device = CaptureDevice(source)
    owner, intruder = object(), object()

    stream = await device.acquire(owner)
    assert await device.acquire(owner) is stream
    with pytest.raises(AlreadyInitializedError):
        await device.acquire(intruder)
    assert len(source.streams) == 1

    device.release(intruder)
    assert stream.live
    device.release(owner)
    assert not stream.live
    assert device.owner is None

    second = await device.acquire(intruder)
    assert second is not stream
    device.release(intruder)


@pytest.mark.asyncio
async def test_concurrent_acquire_is_refused() -> None:
    opened = asyncio.Event()
    release = asyncio.Event()

    class SlowSource(FakeCaptureSource):
        async def open(self):  # type: ignore[no-untyped-def]
            opened.set()
            await release.wait()
            return await super().open()

    device = CaptureDevice(SlowSource())
    owner = object()
    first = asyncio.ensure_future(device.acquire(owner))
    await opened.wait()
    with pytest.raises(AlreadyInitializedError):
        await device.acquire(owner)
    release.set()
    stream = await first
    assert stream.live
    device.release(owner)


@pytest.mark.asyncio
async def test_denied_microphone_frees_the_lease() -> None:
    source = FakeCaptureSource(deny=True)
    device = CaptureDevice(source)
    owner = object()
    with pytest.raises(MediaAccessError):
        await device.acquire(owner)
    assert device.owner is None

    source.deny = False
    stream = await device.acquire(owner)
    assert stream.live
    device.release(owner)


@pytest.mark.asyncio
async def test_gated_track_sends_silence_while_muted() -> None:
    class ToneTrack(AudioStreamTrack):
        async def recv(self):  # type: ignore[no-untyped-def]
            frame = await super().recv()
            for plane in frame.planes:
                plane.update(b"\x10\x00" * (plane.buffer_size // 2))
            return frame

    source = ToneTrack()
    gated = GatedAudioTrack(source)
    assert not gated.enabled

    muted = await gated.recv()
    assert bytes(muted.planes[0]) == bytes(muted.planes[0].buffer_size)
    assert muted.sample_rate == 8000

    gated.enabled = True
    live = await gated.recv()
    assert bytes(live.planes[0])[:2] == b"\x10\x00"
    assert live.pts > muted.pts

    gated.stop()
    source.stop()
