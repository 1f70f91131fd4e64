"""Voice as base64 audio fragments broadcast on the channel's audio topic."""

from __future__ import annotations

import asyncio
import base64
import binascii
from contextlib import suppress

from aiortc.mediastreams import MediaStreamError

from aiovoicechat.base import BaseVoiceSession, SessionHandle
from aiovoicechat.capture import CaptureDevice
from aiovoicechat.codec import AudioFragment, DecodedAudio, FragmentEncoder
from aiovoicechat.config import VoiceChatConfig
from aiovoicechat.errors import SignalingDeliveryError
from aiovoicechat.models.signaling import AudioChunkMessage
from aiovoicechat.models.types import SignalingMessage, TopicPurpose
from aiovoicechat.playback import AudioPlaybackQueue, AudioSink, FragmentDecoder, NullAudioSink
from aiovoicechat.transport.base import BroadcastTransport
from aiovoicechat.util import now_ms


class ChunkedAudioTransport(BaseVoiceSession):
    """
    Voice chat without peer connections.

    The capture is read for as long as the session is connected. While
    transmitting, it is cut into fragments of fragment_duration_ms, each
    encoded on its own and broadcast as an audio-chunk message. Fragments
    from other users go through an AudioPlaybackQueue and are played in
    arrival order.
    """

    PURPOSE = TopicPurpose.AUDIO

    _capture_task: asyncio.Task[None] | None

    def __init__(
        self,
        transport: BroadcastTransport,
        channel_id: str,
        user_id: str,
        *,
        config: VoiceChatConfig | None = None,
        capture_device: CaptureDevice | None = None,
        sink: AudioSink | None = None,
        decoder: FragmentDecoder | None = None,
    ) -> None:
        """
        Create a disconnected transport.

        Args:
            transport: Broadcast transport carrying the channel topics.
            channel_id: Voice channel to join.
            user_id: Local user.
            config: Tunables, defaults when None.
            capture_device: Microphone lease, the process wide default device when None.
            sink: Output for received audio, discarded when None.
            decoder: Replaces the default fragment decoder.
        """
        super().__init__(
            transport, channel_id, user_id, config=config, capture_device=capture_device
        )
        self._sink = sink or NullAudioSink()
        self._playback = AudioPlaybackQueue(
            self._sink,
            sample_rate=self._config.sample_rate,
            channels=self._config.channels,
            decoder=decoder,
            max_pending=self._config.playback_max_pending,
        )
        self._playback.add_played_listener(self._on_fragment_played)
        self._capture_task = None
        self._sequence = 0
        self._transmit_epoch = 0
        self._last_sequence: dict[str, int] = {}

    @property
    def playback_queue(self) -> AudioPlaybackQueue:
        """Return the queue playing received fragments."""
        return self._playback

    async def start_transmission(self) -> None:
        """
        Start broadcasting captured audio.

        Raises:
            RuntimeError: If the transport is not initialized or its capture ended.
        """
        if self._handle is None:
            raise RuntimeError("Session is not initialized")
        if self._capture_task is None or self._capture_task.done():
            raise RuntimeError("Capture has ended")
        if self._transmitting:
            self._logger.debug("Already transmitting")
            return
        self._transmitting = True
        self._transmit_epoch += 1
        self._logger.debug("Transmitting %s fragments", self._config.fragment_codec.value)

    async def stop_transmission(self) -> None:
        """Stop broadcasting. Calling this while not transmitting is a no-op."""
        if not self._transmitting:
            return
        self._transmitting = False
        self._transmit_epoch += 1
        self._logger.debug("Transmission stopped")

    async def _capture_loop(self, handle: SessionHandle) -> None:
        # Runs for the whole session. Capture read while not transmitting is discarded
        codec = self._config.fragment_codec
        encoder = FragmentEncoder(
            codec,
            self._config.sample_rate,
            self._config.channels,
            self._config.fragment_samples,
        )
        loop = asyncio.get_running_loop()
        epoch = self._transmit_epoch
        try:
            while True:
                frame = await handle.capture.track.recv()
                if epoch != self._transmit_epoch:
                    encoder.reset()
                    epoch = self._transmit_epoch
                if not self._transmitting:
                    continue
                payloads = await loop.run_in_executor(None, encoder.push, frame)
                for payload in payloads:
                    if epoch != self._transmit_epoch:
                        break
                    await self._send_fragment(handle, payload)
        except MediaStreamError:
            self._logger.warning("Capture ended, transmission stopped")
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Error in capture loop")
        finally:
            if self._capture_task is asyncio.current_task():
                self._transmitting = False

    async def _send_fragment(self, handle: SessionHandle, payload: bytes) -> None:
        try:
            await handle.signaling.send_audio_chunk(
                base64.b64encode(payload).decode("ascii"),
                now_ms(),
                sequence=self._sequence,
                codec=self._config.fragment_codec.value,
            )
        except SignalingDeliveryError as err:
            self._logger.error("Transmission stopped: %s", err)
            await self.stop_transmission()
            return
        self._sequence += 1

    async def _on_started(self, handle: SessionHandle) -> None:
        self._sequence = 0
        self._capture_task = asyncio.get_running_loop().create_task(self._capture_loop(handle))

    async def _on_stopped(self) -> None:
        await self.stop_transmission()
        task, self._capture_task = self._capture_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._playback.clear()
        self._last_sequence.clear()
        await self._sink.close()

    async def _on_user_removed(self, user_id: str) -> None:
        self._last_sequence.pop(user_id, None)

    async def _handle_channel_message(self, message: SignalingMessage) -> None:
        match message:
            case AudioChunkMessage() as chunk:
                self._receive_chunk(chunk)
            case _:
                self._logger.debug("Ignoring %s on audio topic", type(message).__name__)

    def _receive_chunk(self, chunk: AudioChunkMessage) -> None:
        self._check_sequence(chunk.user_id, chunk.sequence)
        try:
            payload = base64.b64decode(chunk.audio_data, validate=True)
        except (binascii.Error, ValueError) as err:
            self._logger.error(
                "Dropping fragment %s from %s: invalid base64 (%s)",
                chunk.sequence,
                chunk.user_id,
                err,
            )
            return
        self._playback.enqueue(
            AudioFragment(
                payload=payload,
                produced_at_ms=chunk.timestamp,
                producer_user_id=chunk.user_id,
                codec=chunk.codec or "opus",
                sequence=chunk.sequence,
            )
        )

    def _check_sequence(self, user_id: str, sequence: int | None) -> None:
        if sequence is None:
            return
        last = self._last_sequence.get(user_id)
        if last is not None:
            if sequence <= last:
                self._logger.debug(
                    "Fragment %d from %s arrived after %d", sequence, user_id, last
                )
                return
            if sequence != last + 1:
                self._logger.debug(
                    "Missing %d fragment(s) from %s", sequence - last - 1, user_id
                )
        self._last_sequence[user_id] = sequence

    def _on_fragment_played(self, fragment: AudioFragment, audio: DecodedAudio) -> None:
        self._emit_audio(audio.pcm)
