"""Voice over direct peer connections negotiated on a channel topic."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError

from aiovoicechat.base import BaseVoiceSession, SessionHandle
from aiovoicechat.capture import CaptureDevice, GatedAudioTrack
from aiovoicechat.codec import PcmConverter
from aiovoicechat.config import VoiceChatConfig
from aiovoicechat.errors import NegotiationError
from aiovoicechat.models.signaling import (
    AnswerMessage,
    IceCandidateMessage,
    IceCandidatePayload,
    OfferMessage,
    SessionDescription,
)
from aiovoicechat.models.types import PeerState, SignalingMessage, TopicPurpose
from aiovoicechat.peer import PeerLink
from aiovoicechat.transport.base import BroadcastTransport

MAX_EARLY_CANDIDATES = 64
"""Candidates kept per user that has no peer connection yet."""

PeerConnectionFactory = Callable[[], Any]
RemoteTrackCallback = Callable[[str, MediaStreamTrack], None]


class PeerAudioSession(BaseVoiceSession):
    """
    One direct audio connection per remote user of a channel.

    Negotiation runs over the channel's voice topic. Existing members offer to a
    user that announces itself, the newcomer answers. When two users offer to
    each other at the same time, the one with the larger user id gives up its
    own offer and answers.

    The local microphone is shared by all connections through a MediaRelay and
    starts muted; start_transmitting() and stop_transmitting() switch between
    microphone audio and silence without renegotiating.
    """

    PURPOSE = TopicPurpose.VOICE

    _relay: MediaRelay | None
    _outbound: GatedAudioTrack | None

    def __init__(
        self,
        transport: BroadcastTransport,
        channel_id: str,
        user_id: str,
        *,
        config: VoiceChatConfig | None = None,
        capture_device: CaptureDevice | None = None,
        peer_connection_factory: PeerConnectionFactory | None = None,
    ) -> None:
        """
        Create a disconnected session.

        Args:
            transport: Broadcast transport carrying the channel topics.
            channel_id: Voice channel to join.
            user_id: Local user.
            config: Tunables, defaults when None.
            capture_device: Microphone lease, the process wide default device when None.
            peer_connection_factory: Creates the RTCPeerConnection for each peer.
        """
        super().__init__(
            transport, channel_id, user_id, config=config, capture_device=capture_device
        )
        self._pc_factory = peer_connection_factory or self._create_peer_connection
        self._peers: dict[str, PeerLink] = {}
        self._early_candidates: dict[str, list[IceCandidatePayload]] = {}
        self._relay = None
        self._outbound = None
        self._track_tasks: dict[str, asyncio.Task[None]] = {}
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._remote_track_callbacks: list[RemoteTrackCallback] = []

    def _create_peer_connection(self) -> RTCPeerConnection:
        ice_servers = [RTCIceServer(urls=url) for url in self._config.ice_servers]
        return RTCPeerConnection(RTCConfiguration(iceServers=ice_servers))

    @property
    def connected_peer_count(self) -> int:
        """Return the number of peers with an established media connection."""
        return sum(1 for link in self._peers.values() if link.state is PeerState.CONNECTED)

    def peer_state(self, user_id: str) -> PeerState | None:
        """Return the negotiation state with user_id, None if there never was a connection."""
        link = self._peers.get(user_id)
        return link.state if link is not None else None

    def _require_handle(self) -> SessionHandle:
        if self._handle is None:
            raise RuntimeError("Session is not initialized")
        return self._handle

    async def connect_to_peer(self, user_id: str) -> None:
        """
        Offer a connection to user_id.

        Raises:
            RuntimeError: If the session is not initialized.
            NegotiationError: If the offer cannot be created. Only this peer is closed.
        """
        handle = self._require_handle()
        if user_id == self.user_id:
            raise ValueError("Cannot connect to self")
        # Candidates that arrived before our own offer belong to an older negotiation
        self._early_candidates.pop(user_id, None)
        link = await self._replace_link(user_id)
        try:
            offer = await link.create_offer()
        except NegotiationError:
            await self._close_link(link)
            raise
        self._logger.debug("Sending offer to %s", user_id)
        await handle.signaling.send_offer(user_id, offer)

    async def handle_incoming_offer(self, user_id: str, offer: SessionDescription) -> None:
        """
        Answer an offer from user_id.

        Raises:
            RuntimeError: If the session is not initialized.
            NegotiationError: If the offer cannot be applied. Only this peer is closed.
        """
        handle = self._require_handle()
        existing = self._peers.get(user_id)
        if (
            existing is not None
            and existing.state is PeerState.OFFER_SENT
            and self.user_id < user_id
        ):
            self._logger.debug("Ignoring offer from %s, our own offer is pending", user_id)
            return
        link = await self._replace_link(user_id)
        for candidate in self._early_candidates.pop(user_id, []):
            await link.add_remote_candidate(candidate)
        try:
            answer = await link.accept_offer(offer)
        except NegotiationError:
            await self._close_link(link)
            raise
        self._logger.debug("Sending answer to %s", user_id)
        await handle.signaling.send_answer(user_id, answer)

    async def start_transmitting(self) -> None:
        """Send microphone audio to every peer."""
        self._require_handle()
        assert self._outbound is not None
        self._outbound.enabled = True
        self._transmitting = True

    async def stop_transmitting(self) -> None:
        """Send silence to every peer."""
        if self._outbound is not None:
            self._outbound.enabled = False
        self._transmitting = False

    def add_remote_track_listener(self, callback: RemoteTrackCallback) -> Callable[[], None]:
        """Add a listener for audio tracks received from peers.

        Returns:
            A function that removes this listener when called.
        """
        self._remote_track_callbacks.append(callback)
        return lambda: (
            self._remote_track_callbacks.remove(callback)
            if callback in self._remote_track_callbacks
            else None
        )

    async def _on_started(self, handle: SessionHandle) -> None:
        self._relay = MediaRelay()
        self._outbound = GatedAudioTrack(handle.capture.track, enabled=False)
        # Keeps the relay reading the microphone while no peer is connected
        self._spawn(self._drain(self._relay.subscribe(self._outbound, buffered=False)))

    async def _on_stopped(self) -> None:
        for link in list(self._peers.values()):
            await self._close_link(link)
        self._peers.clear()
        self._early_candidates.clear()
        self._track_tasks.clear()
        await self._cancel_background()
        if self._outbound is not None:
            self._outbound.stop()
            self._outbound = None
        self._relay = None

    async def _handle_channel_message(self, message: SignalingMessage) -> None:
        match message:
            case OfferMessage(offer=offer, from_user_id=sender):
                await self.handle_incoming_offer(sender, offer)
            case AnswerMessage(answer=answer, from_user_id=sender):
                await self._handle_answer(sender, answer)
            case IceCandidateMessage(candidate=candidate, from_user_id=sender):
                await self._handle_candidate(sender, candidate)
            case _:
                self._logger.debug("Ignoring %s on voice topic", type(message).__name__)

    async def _on_user_joined(self, user_id: str) -> None:
        self._add_user(user_id)
        await self.connect_to_peer(user_id)

    async def _on_heartbeat(self, user_id: str) -> None:
        self._add_user(user_id)
        link = self._peers.get(user_id)
        if (link is None or link.closed) and self.user_id < user_id:
            # We missed their user-joined
            await self.connect_to_peer(user_id)

    async def _on_user_removed(self, user_id: str) -> None:
        self._early_candidates.pop(user_id, None)
        link = self._peers.get(user_id)
        if link is not None:
            await self._close_link(link)

    async def _handle_answer(self, sender: str | None, answer: SessionDescription) -> None:
        link = self._answering_link(sender)
        if link is None or link.state is not PeerState.OFFER_SENT:
            self._logger.info("Ignoring unexpected answer from %s", sender or "unknown user")
            return
        try:
            await link.accept_answer(answer)
        except NegotiationError:
            await self._close_link(link)
            raise

    def _answering_link(self, sender: str | None) -> PeerLink | None:
        if sender is not None:
            return self._peers.get(sender)
        # Answers without fromUserId can only be matched to a single open offer
        offering = [link for link in self._peers.values() if link.state is PeerState.OFFER_SENT]
        return offering[0] if len(offering) == 1 else None

    async def _handle_candidate(self, sender: str, candidate: IceCandidatePayload) -> None:
        link = self._peers.get(sender)
        if link is None:
            early = self._early_candidates.setdefault(sender, [])
            if len(early) < MAX_EARLY_CANDIDATES:
                early.append(candidate)
            return
        if link.closed:
            return
        try:
            await link.add_remote_candidate(candidate)
        except NegotiationError:
            await self._close_link(link)
            raise

    async def _replace_link(self, user_id: str) -> PeerLink:
        existing = self._peers.get(user_id)
        if existing is not None:
            await self._close_link(existing)
        assert self._relay is not None
        assert self._outbound is not None
        pc = self._pc_factory()
        link = PeerLink(
            user_id, pc, on_state_change=self._on_peer_state, parent_logger=self._logger
        )
        self._peers[user_id] = link
        pc.addTrack(self._relay.subscribe(self._outbound, buffered=False))

        @pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            if track.kind != "audio" or link.closed:
                return
            self._logger.debug("Receiving audio from %s", user_id)
            for callback in list(self._remote_track_callbacks):
                try:
                    callback(user_id, track)
                except Exception:
                    self._logger.exception("Error in remote track callback")
            self._track_tasks[user_id] = self._spawn(self._consume_remote_track(link, track))

        @pc.on("connectionstatechange")
        async def _on_connection_state_change() -> None:
            if link.closed:
                return
            state = pc.connectionState
            link.media_state_changed(state)
            if state == "failed":
                self._logger.warning("Media connection to %s failed", user_id)
                await self._close_link(link)

        link.arm_timeout(
            self._config.negotiation_timeout_s,
            lambda expired: self._spawn(self._close_link(expired)),
        )
        return link

    def _on_peer_state(self, link: PeerLink, old: PeerState, new: PeerState) -> None:
        if new is PeerState.CONNECTED:
            self._logger.info("Connected to %s", link.user_id)
            self._add_user(link.user_id)

    async def _close_link(self, link: PeerLink) -> None:
        if link.closed:
            return
        task = self._track_tasks.get(link.user_id)
        if task is not None and self._peers.get(link.user_id) is link:
            del self._track_tasks[link.user_id]
            if task is not asyncio.current_task():
                task.cancel()
        await link.close()

    async def _consume_remote_track(self, link: PeerLink, track: MediaStreamTrack) -> None:
        converter = PcmConverter(self._config.sample_rate, self._config.channels)
        try:
            while not link.closed:
                frame = await track.recv()
                pcm = converter.convert(frame)
                if pcm:
                    self._emit_audio(pcm)
        except MediaStreamError:
            self._logger.debug("Audio track of %s ended", link.user_id)
        except Exception:
            self._logger.exception("Error reading audio from %s", link.user_id)

    async def _drain(self, track: MediaStreamTrack) -> None:
        try:
            while True:
                await track.recv()
        except MediaStreamError:
            self._logger.debug("Local capture ended")
        finally:
            track.stop()

    def _spawn(self, coro: Any) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _cancel_background(self) -> None:
        current_task = asyncio.current_task()
        for task in list(self._background_tasks):
            if task is current_task:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
