"""Microphone capture and its single-owner lease."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from aiortc import MediaStreamTrack

from aiovoicechat.errors import AlreadyInitializedError, MediaAccessError

if TYPE_CHECKING:
    import av

logger = logging.getLogger(__name__)

_default_capture_device: CaptureDevice | None = None


@dataclass
class CaptureStream:
    """A live local audio capture."""

    track: MediaStreamTrack
    """Audio track producing captured frames."""
    on_stop: Callable[[], None] | None = field(default=None, repr=False)
    """Releases the underlying device after the track was stopped."""
    _stopped: bool = field(default=False, init=False, repr=False)

    @property
    def live(self) -> bool:
        """Return True until stop() was called."""
        return not self._stopped

    def stop(self) -> None:
        """Stop the track and release the device. Calling this twice is a no-op."""
        if self._stopped:
            return
        self._stopped = True
        self.track.stop()
        if self.on_stop is not None:
            self.on_stop()


class CaptureSource(Protocol):
    """Something that can open a capture stream."""

    async def open(self) -> CaptureStream:
        """
        Open a new capture stream.

        Raises:
            MediaAccessError: If the device is missing or access was denied.
        """
        ...


def _default_device() -> tuple[str, str]:
    match sys.platform:
        case "darwin":
            return ":default", "avfoundation"
        case "win32":
            return "audio=default", "dshow"
        case _:
            return "default", "pulse"


class MicrophoneSource:
    """Capture source reading the system microphone through ffmpeg."""

    def __init__(
        self,
        device: str | None = None,
        input_format: str | None = None,
        options: dict[str, str] | None = None,
    ) -> None:
        """
        Configure the microphone.

        Args:
            device: ffmpeg input name, the platform default input when None.
            input_format: ffmpeg input format, e.g. 'pulse', 'alsa' or 'avfoundation'.
            options: Extra ffmpeg input options.
        """
        default_device, default_format = _default_device()
        self._device = device or default_device
        self._format = input_format or (default_format if device is None else None)
        self._options = options or {}

    async def open(self) -> CaptureStream:
        """Open the microphone."""
        from aiortc.contrib.media import MediaPlayer  # noqa: PLC0415

        loop = asyncio.get_running_loop()
        logger.debug("Opening microphone %s (format %s)", self._device, self._format)
        try:
            player = await loop.run_in_executor(
                None,
                lambda: MediaPlayer(self._device, format=self._format, options=self._options),
            )
        except Exception as err:
            raise MediaAccessError(f"Cannot open microphone {self._device!r}: {err}") from err
        if player.audio is None:
            raise MediaAccessError(f"Input {self._device!r} provides no audio")
        return CaptureStream(track=player.audio)


class CaptureDevice:
    """
    Hands out the capture stream to one owner at a time.

    Acquiring again with the same owner returns the stream that owner already
    holds; any other owner is refused until the stream is released.
    """

    def __init__(self, source: CaptureSource | None = None) -> None:
        """Create a device backed by source, the default microphone when None."""
        self._source = source if source is not None else MicrophoneSource()
        self._owner: object | None = None
        self._stream: CaptureStream | None = None

    @classmethod
    def default(cls) -> CaptureDevice:
        """Return the device for the system microphone shared by every session of this process."""
        global _default_capture_device  # noqa: PLW0603
        if _default_capture_device is None:
            _default_capture_device = cls()
        return _default_capture_device

    @property
    def owner(self) -> object | None:
        """Return the current lease holder."""
        return self._owner

    async def acquire(self, owner: object) -> CaptureStream:
        """
        Open the capture stream for owner.

        Raises:
            AlreadyInitializedError: If another owner holds the stream.
            MediaAccessError: If the microphone cannot be opened.
        """
        if self._owner is not None:
            if self._owner is not owner:
                raise AlreadyInitializedError("Capture device is in use by another session")
            if self._stream is not None:
                return self._stream
            raise AlreadyInitializedError("Capture device is still being opened")
        self._owner = owner
        try:
            stream = await self._source.open()
        except BaseException:
            self._owner = None
            raise
        self._stream = stream
        logger.debug("Capture acquired by %r", owner)
        return stream

    def release(self, owner: object) -> None:
        """Stop the stream held by owner. Does nothing for other owners."""
        if self._owner is not owner:
            return
        stream, self._stream, self._owner = self._stream, None, None
        if stream is not None:
            stream.stop()
            logger.debug("Capture released by %r", owner)


class GatedAudioTrack(MediaStreamTrack):
    """
    Audio track that forwards a source track or silence.

    Muting replaces samples with silence of the same format and timing, so the
    receiving side never sees a gap in the stream and no renegotiation is needed.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, *, enabled: bool = False) -> None:
        """Wrap source, starting muted unless enabled."""
        super().__init__()
        self._source = source
        self.enabled = enabled

    async def recv(self) -> av.AudioFrame:  # type: ignore[override]
        """Return the next frame, silenced while disabled."""
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return _silence_like(frame)


def _silence_like(frame: Any) -> av.AudioFrame:
    from aiovoicechat.codec import _get_av  # noqa: PLC0415

    av_module = _get_av()
    silence = av_module.AudioFrame(
        format=frame.format.name, layout=frame.layout.name, samples=frame.samples
    )
    for plane in silence.planes:
        plane.update(bytes(plane.buffer_size))
    silence.sample_rate = frame.sample_rate
    silence.pts = frame.pts
    silence.time_base = frame.time_base
    return silence
