"""Lifecycle shared by the peer session and the chunked fallback transport."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, Self

from aiovoicechat.capture import CaptureDevice, CaptureStream
from aiovoicechat.config import VoiceChatConfig
from aiovoicechat.errors import SignalingDeliveryError
from aiovoicechat.models.signaling import HeartbeatMessage, UserJoinedMessage, UserLeftMessage
from aiovoicechat.models.types import ConnectionState, SignalingMessage, TopicPurpose
from aiovoicechat.presence import PresenceTracker
from aiovoicechat.signaling import SignalingChannel
from aiovoicechat.transport.base import BroadcastTransport

logger = logging.getLogger(__name__)

RECEIVING_HOLD_S = 0.5
"""How long is_receiving stays set after the last received audio."""

AudioCallback = Callable[[bytes], None]
PeerCallback = Callable[[str], None]
StateCallback = Callable[[ConnectionState], None]


class UserDirectory(Protocol):
    """Source of the signed-in user and the channel they are in."""

    def get_current_user_id(self) -> str | None:
        """Return the signed-in user, None when nobody is signed in."""
        ...

    def get_active_channel_id(self) -> str:
        """Return the channel the user is active in."""
        ...


@dataclass(frozen=True)
class SessionHandle:
    """Resources owned by an initialized session."""

    channel_id: str
    user_id: str
    capture: CaptureStream
    """The local capture, owned until disconnect."""
    signaling: SignalingChannel
    """The live topic subscription."""


class BaseVoiceSession(ABC):
    """
    A user's presence in one voice channel.

    initialize() acquires the capture device and the channel subscription and
    returns a SessionHandle; while the handle is live, further initialize()
    calls return it unchanged. disconnect() gives everything back and may be
    called any number of times.
    """

    PURPOSE: ClassVar[TopicPurpose]
    """Topic namespace the session talks on."""

    _handle: SessionHandle | None
    _heartbeat_task: asyncio.Task[None] | None
    _receiving_handle: asyncio.TimerHandle | None

    def __init__(
        self,
        transport: BroadcastTransport,
        channel_id: str,
        user_id: str,
        *,
        config: VoiceChatConfig | None = None,
        capture_device: CaptureDevice | None = None,
    ) -> None:
        """
        Create a disconnected session.

        Args:
            transport: Broadcast transport carrying the channel topics.
            channel_id: Voice channel to join.
            user_id: Local user.
            config: Tunables, defaults when None.
            capture_device: Microphone lease, the process wide default device when None.
        """
        if not user_id:
            raise ValueError("user_id must not be empty")
        if not channel_id:
            raise ValueError("channel_id must not be empty")
        self._transport = transport
        self.channel_id = channel_id
        self.user_id = user_id
        self._config = config or VoiceChatConfig()
        self._capture_device = capture_device or CaptureDevice.default()
        self._presence = PresenceTracker(self._config.presence_timeout_s)
        self._lifecycle_lock = asyncio.Lock()
        self._handle = None
        self._heartbeat_task = None
        self._receiving_handle = None
        self._state = ConnectionState.DISCONNECTED
        self._transmitting = False
        self._receiving = False
        self._audio_callbacks: list[AudioCallback] = []
        self._peer_joined_callbacks: list[PeerCallback] = []
        self._peer_left_callbacks: list[PeerCallback] = []
        self._state_callbacks: list[StateCallback] = []
        self._logger = logger.getChild(f"{self.PURPOSE.value}.{channel_id}")

    @classmethod
    def from_directory(
        cls, transport: BroadcastTransport, directory: UserDirectory, **kwargs: Any
    ) -> Self:
        """
        Create a session for the signed-in user in their active channel.

        Raises:
            RuntimeError: If nobody is signed in.
        """
        user_id = directory.get_current_user_id()
        if not user_id:
            raise RuntimeError("No user is signed in")
        return cls(transport, directory.get_active_channel_id(), user_id, **kwargs)

    @property
    def config(self) -> VoiceChatConfig:
        """Return the session configuration."""
        return self._config

    @property
    def handle(self) -> SessionHandle | None:
        """Return the live session handle, None while disconnected."""
        return self._handle

    @property
    def connection_state(self) -> ConnectionState:
        """Return the overall connection state."""
        return self._state

    @property
    def connected_users(self) -> frozenset[str]:
        """Return the remote users present in the channel."""
        return self._presence.users

    @property
    def is_transmitting(self) -> bool:
        """Return True while local audio is sent."""
        return self._transmitting

    @property
    def is_receiving(self) -> bool:
        """Return True while remote audio arrived within the last half second."""
        return self._receiving

    async def initialize(self) -> SessionHandle:
        """
        Join the channel.

        Raises:
            MediaAccessError: If the microphone cannot be opened.
            AlreadyInitializedError: If another session holds the microphone.
            SignalingDeliveryError: If the channel topic cannot be joined.
        """
        async with self._lifecycle_lock:
            if self._handle is not None:
                self._logger.debug("Already initialized")
                return self._handle
            self._set_state(ConnectionState.CONNECTING)
            signaling: SignalingChannel | None = None
            try:
                capture = await self._capture_device.acquire(self)
                signaling = SignalingChannel(
                    self._transport,
                    self.channel_id,
                    self.user_id,
                    purpose=self.PURPOSE,
                    retry_backoff_s=self._config.signaling_retry_backoff_s,
                )
                signaling.set_handler(self._handle_signal)
                await signaling.open()
                self._handle = SessionHandle(
                    channel_id=self.channel_id,
                    user_id=self.user_id,
                    capture=capture,
                    signaling=signaling,
                )
                await self._on_started(self._handle)
                await signaling.announce_presence()
            except BaseException:
                self._handle = None
                await self._on_stopped()
                if signaling is not None:
                    await signaling.close()
                self._capture_device.release(self)
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat_loop())
            self._set_state(ConnectionState.CONNECTED)
            self._logger.info("Joined channel as %s", self.user_id)
            return self._handle

    async def disconnect(self) -> None:
        """Leave the channel and release every resource. Calling this twice is a no-op."""
        async with self._lifecycle_lock:
            handle = self._handle
            if handle is None:
                return
            self._handle = None
            if self._heartbeat_task is not None:
                self._heartbeat_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._heartbeat_task
                self._heartbeat_task = None
            try:
                await handle.signaling.announce_departure()
            except SignalingDeliveryError as err:
                self._logger.warning("Could not announce departure: %s", err)
            await self._on_stopped()
            await handle.signaling.close()
            self._capture_device.release(self)
            self._presence.clear()
            self._transmitting = False
            self._set_receiving(False)
            self._set_state(ConnectionState.DISCONNECTED)
            self._logger.info("Left channel")

    @abstractmethod
    async def _on_started(self, handle: SessionHandle) -> None:
        """Set up transport specific state once the subscription is open."""

    @abstractmethod
    async def _on_stopped(self) -> None:
        """Tear down transport specific state. Must tolerate partial setup."""

    @abstractmethod
    async def _handle_channel_message(self, message: SignalingMessage) -> None:
        """Handle a message other than a presence announcement."""

    async def _handle_signal(self, message: SignalingMessage) -> None:
        match message:
            case UserJoinedMessage(user_id=user_id):
                await self._on_user_joined(user_id)
            case UserLeftMessage(user_id=user_id):
                await self._remove_user(user_id)
            case HeartbeatMessage(user_id=user_id):
                await self._on_heartbeat(user_id)
            case _:
                await self._handle_channel_message(message)

    async def _on_user_joined(self, user_id: str) -> None:
        self._add_user(user_id)

    async def _on_heartbeat(self, user_id: str) -> None:
        self._add_user(user_id)

    def _add_user(self, user_id: str) -> None:
        if self._presence.touch(user_id):
            self._logger.debug("User %s present", user_id)
            self._notify(self._peer_joined_callbacks, user_id)

    async def _remove_user(self, user_id: str) -> None:
        was_present = self._presence.mark_left(user_id)
        await self._on_user_removed(user_id)
        if was_present:
            self._logger.debug("User %s gone", user_id)
            self._notify(self._peer_left_callbacks, user_id)

    async def _on_user_removed(self, user_id: str) -> None:
        """Release per-user state after user_id left or timed out."""

    async def _heartbeat_loop(self) -> None:
        interval = self._config.heartbeat_interval_s
        while True:
            await asyncio.sleep(interval)
            handle = self._handle
            if handle is None:
                return
            try:
                await self._heartbeat(handle)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Error in heartbeat loop")

    async def _heartbeat(self, handle: SessionHandle) -> None:
        try:
            await handle.signaling.send_heartbeat()
        except SignalingDeliveryError as err:
            self._logger.warning("Heartbeat failed: %s", err)
        for user_id in self._presence.evict_stale():
            self._logger.info("User %s timed out", user_id)
            await self._on_user_removed(user_id)
            self._notify(self._peer_left_callbacks, user_id)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception:
                self._logger.exception("Error in state callback")

    def _set_receiving(self, receiving: bool) -> None:
        if self._receiving_handle is not None:
            self._receiving_handle.cancel()
            self._receiving_handle = None
        self._receiving = receiving
        if receiving:
            self._receiving_handle = asyncio.get_running_loop().call_later(
                RECEIVING_HOLD_S, self._set_receiving, False
            )

    def _emit_audio(self, pcm: bytes) -> None:
        self._set_receiving(True)
        for callback in list(self._audio_callbacks):
            try:
                callback(pcm)
            except Exception:
                self._logger.exception("Error in audio callback")

    def _notify(self, callbacks: list[PeerCallback], user_id: str) -> None:
        for callback in list(callbacks):
            try:
                callback(user_id)
            except Exception:
                self._logger.exception("Error in peer callback")

    def add_audio_listener(self, callback: AudioCallback) -> Callable[[], None]:
        """Add a listener for decoded remote audio (interleaved s16 PCM).

        Returns:
            A function that removes this listener when called.
        """
        self._audio_callbacks.append(callback)
        return lambda: (
            self._audio_callbacks.remove(callback) if callback in self._audio_callbacks else None
        )

    def add_peer_joined_listener(self, callback: PeerCallback) -> Callable[[], None]:
        """Add a listener for users entering the channel.

        Returns:
            A function that removes this listener when called.
        """
        self._peer_joined_callbacks.append(callback)
        return lambda: (
            self._peer_joined_callbacks.remove(callback)
            if callback in self._peer_joined_callbacks
            else None
        )

    def add_peer_left_listener(self, callback: PeerCallback) -> Callable[[], None]:
        """Add a listener for users leaving or timing out.

        Returns:
            A function that removes this listener when called.
        """
        self._peer_left_callbacks.append(callback)
        return lambda: (
            self._peer_left_callbacks.remove(callback)
            if callback in self._peer_left_callbacks
            else None
        )

    def add_state_listener(self, callback: StateCallback) -> Callable[[], None]:
        """Add a listener for connection state changes.

        Returns:
            A function that removes this listener when called.
        """
        self._state_callbacks.append(callback)
        return lambda: (
            self._state_callbacks.remove(callback) if callback in self._state_callbacks else None
        )
