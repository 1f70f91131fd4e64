"""Sequential playback of received audio fragments."""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

from aiovoicechat.codec import AudioFragment, DecodedAudio, decode_fragment
from aiovoicechat.errors import DecodeError
from aiovoicechat.models.types import PlaybackState

if TYPE_CHECKING:
    import sounddevice

logger = logging.getLogger(__name__)

FragmentDecoder = Callable[[AudioFragment], DecodedAudio]
"""Decodes a fragment, raising DecodeError when it cannot. Runs in an executor."""
PlayedCallback = Callable[[AudioFragment, DecodedAudio], None]
DroppedCallback = Callable[[AudioFragment, Exception], None]


class AudioSink(Protocol):
    """Destination of decoded audio."""

    async def play(self, audio: DecodedAudio) -> None:
        """Play audio, returning when it was handed to the output."""
        ...

    async def close(self) -> None:
        """Release the output device."""
        ...


class NullAudioSink:
    """Sink that discards audio, optionally taking as long as real playback would."""

    def __init__(self, *, paced: bool = True) -> None:
        """Create the sink. With paced=False play() returns immediately."""
        self._paced = paced

    async def play(self, audio: DecodedAudio) -> None:
        """Wait for the duration of audio."""
        await asyncio.sleep(audio.duration_s if self._paced else 0)

    async def close(self) -> None:
        """Nothing to release."""


class SoundDeviceSink:
    """
    Play audio on a PortAudio output device.

    Stream access is serialized with a lock. A cancelled play() leaves its
    write running in the executor while the next play() may already start.
    """

    _stream: sounddevice.RawOutputStream | None

    def __init__(self, device: int | str | None = None) -> None:
        """
        Create a sink for device.

        Args:
            device: sounddevice output device index or name, the system default when None.
        """
        self._device = device
        self._stream = None
        self._format: tuple[int, int] | None = None
        self._lock = threading.Lock()

    async def play(self, audio: DecodedAudio) -> None:
        """Write audio to the device, returning once the device accepted it."""
        underflowed = await asyncio.get_running_loop().run_in_executor(None, self._write, audio)
        if underflowed:
            logger.debug("Output underflow on %s", self._device or "default device")

    def _write(self, audio: DecodedAudio) -> bool:
        with self._lock:
            if self._stream is None or self._format != (audio.sample_rate, audio.channels):
                self._open_stream(audio.sample_rate, audio.channels)
            assert self._stream is not None
            return bool(self._stream.write(audio.pcm))

    def _open_stream(self, sample_rate: int, channels: int) -> None:
        import sounddevice  # noqa: PLC0415

        self._close_stream()
        self._stream = sounddevice.RawOutputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="int16",
            device=self._device,
        )
        self._stream.start()
        self._format = (sample_rate, channels)
        logger.info(
            "Audio output opened: %d Hz, %d channel(s), device=%s",
            sample_rate,
            channels,
            self._device,
        )

    def _close_stream(self) -> None:
        if self._stream is None:
            return
        self._stream.stop()
        self._stream.close()
        self._stream = None
        self._format = None

    def _close(self) -> None:
        with self._lock:
            self._close_stream()

    async def close(self) -> None:
        """Close the output stream."""
        await asyncio.get_running_loop().run_in_executor(None, self._close)


class AudioPlaybackQueue:
    """
    FIFO of fragments that are decoded and played one at a time.

    enqueue() never blocks. A single worker task pops the head, decodes it,
    hands it to the sink and moves on; a fragment that fails to decode or play
    is logged and skipped without affecting the fragments behind it.
    """

    def __init__(
        self,
        sink: AudioSink,
        *,
        sample_rate: int = 48000,
        channels: int = 1,
        decoder: FragmentDecoder | None = None,
        max_pending: int = 50,
    ) -> None:
        """
        Create an idle queue.

        Args:
            sink: Output that plays decoded audio.
            sample_rate: Sample rate fragments are decoded to.
            channels: Channel count fragments are decoded to.
            decoder: Replaces the default av based decoder.
            max_pending: Backlog size after which the oldest fragment is dropped.
        """
        self._sink = sink
        self._decoder: FragmentDecoder = decoder or functools.partial(
            decode_fragment, sample_rate=sample_rate, channels=channels
        )
        self._max_pending = max_pending
        self._pending: deque[AudioFragment] = deque()
        self._current: AudioFragment | None = None
        self._worker: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._played_callbacks: list[PlayedCallback] = []
        self._dropped_callbacks: list[DroppedCallback] = []

    @property
    def state(self) -> PlaybackState:
        """Return PLAYING while a worker is processing fragments."""
        return PlaybackState.PLAYING if self._worker is not None else PlaybackState.IDLE

    @property
    def pending(self) -> int:
        """Return the number of fragments waiting behind the current one."""
        return len(self._pending)

    @property
    def current(self) -> AudioFragment | None:
        """Return the fragment being decoded or played."""
        return self._current

    def enqueue(self, fragment: AudioFragment) -> None:
        """Append fragment and start playback if idle."""
        if len(self._pending) >= self._max_pending:
            dropped = self._pending.popleft()
            logger.warning(
                "Playback backlog full, dropping fragment from %s", dropped.producer_user_id
            )
            self._notify_dropped(dropped, OverflowError("playback backlog full"))
        self._pending.append(fragment)
        if self._worker is None:
            self._idle.clear()
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def clear(self) -> None:
        """Drop all pending fragments and stop the one being played."""
        self._pending.clear()
        worker, self._worker = self._worker, None
        self._current = None
        if worker is not None:
            worker.cancel()
        self._idle.set()

    async def wait_idle(self) -> None:
        """Wait until every enqueued fragment was processed."""
        await self._idle.wait()

    def add_played_listener(self, callback: PlayedCallback) -> Callable[[], None]:
        """Add a listener called after each fragment was played.

        Returns:
            A function that removes this listener when called.
        """
        self._played_callbacks.append(callback)
        return lambda: (
            self._played_callbacks.remove(callback)
            if callback in self._played_callbacks
            else None
        )

    def add_dropped_listener(self, callback: DroppedCallback) -> Callable[[], None]:
        """Add a listener called with each fragment that could not be played.

        Returns:
            A function that removes this listener when called.
        """
        self._dropped_callbacks.append(callback)
        return lambda: (
            self._dropped_callbacks.remove(callback)
            if callback in self._dropped_callbacks
            else None
        )

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._pending:
                fragment = self._pending.popleft()
                self._current = fragment
                try:
                    audio = await loop.run_in_executor(None, self._decoder, fragment)
                    await self._sink.play(audio)
                except DecodeError as err:
                    logger.error(
                        "Dropping undecodable fragment %s from %s: %s",
                        fragment.sequence,
                        fragment.producer_user_id,
                        err,
                    )
                    self._notify_dropped(fragment, err)
                    continue
                except Exception as err:
                    logger.exception("Error playing fragment from %s", fragment.producer_user_id)
                    self._notify_dropped(fragment, err)
                    continue
                self._notify_played(fragment, audio)
        finally:
            # clear() may already have handed the queue to a newer worker
            if self._worker is asyncio.current_task():
                self._worker = None
                self._current = None
                self._idle.set()

    def _notify_played(self, fragment: AudioFragment, audio: DecodedAudio) -> None:
        for callback in list(self._played_callbacks):
            try:
                callback(fragment, audio)
            except Exception:
                logger.exception("Error in played callback")

    def _notify_dropped(self, fragment: AudioFragment, error: Exception) -> None:
        for callback in list(self._dropped_callbacks):
            try:
                callback(fragment, error)
            except Exception:
                logger.exception("Error in dropped callback")
