"""Negotiation state of one direct peer connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from aiovoicechat.errors import NegotiationError
from aiovoicechat.models.signaling import IceCandidatePayload, SessionDescription
from aiovoicechat.models.types import PeerState

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[PeerState, frozenset[PeerState]] = {
    PeerState.NEW: frozenset({PeerState.OFFER_SENT, PeerState.OFFER_RECEIVED}),
    PeerState.OFFER_SENT: frozenset({PeerState.ANSWER_RECEIVED}),
    PeerState.OFFER_RECEIVED: frozenset({PeerState.ANSWER_SENT}),
    PeerState.ANSWER_SENT: frozenset({PeerState.CONNECTED}),
    PeerState.ANSWER_RECEIVED: frozenset({PeerState.CONNECTED}),
    PeerState.CONNECTED: frozenset(),
    PeerState.CLOSED: frozenset(),
}
"""Forward transitions. Every state except CLOSED may also move to CLOSED."""

StateChangeCallback = Callable[["PeerLink", PeerState, PeerState], None]


def _to_rtc(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


def _from_rtc(description: RTCSessionDescription) -> SessionDescription:
    return SessionDescription(type=description.type, sdp=description.sdp)


class PeerLink:
    """
    One RTCPeerConnection to a remote user and its negotiation state.

    The link walks NEW -> OFFER_SENT -> ANSWER_RECEIVED -> CONNECTED as the
    offering side or NEW -> OFFER_RECEIVED -> ANSWER_SENT -> CONNECTED as the
    answering side. Any other step raises NegotiationError. Remote candidates
    that arrive before the remote description are held back and applied as
    soon as it is set.
    """

    def __init__(
        self,
        user_id: str,
        pc: Any,
        *,
        on_state_change: StateChangeCallback | None = None,
        parent_logger: logging.Logger | None = None,
    ) -> None:
        """
        Wrap pc, the connection to user_id.

        Args:
            user_id: Remote user of this link.
            pc: An aiortc RTCPeerConnection, or an object with the same interface.
            on_state_change: Called with (link, old_state, new_state) after each transition.
            parent_logger: Logger this link derives its child logger from.
        """
        self.user_id = user_id
        self.pc = pc
        self._state = PeerState.NEW
        self._on_state_change = on_state_change
        self._pending_candidates: list[IceCandidatePayload] = []
        self._media_connected = False
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._logger = (parent_logger or logger).getChild(user_id)

    def __repr__(self) -> str:
        return f"<PeerLink {self.user_id} {self._state.value}>"

    @property
    def state(self) -> PeerState:
        """Return the negotiation state."""
        return self._state

    @property
    def closed(self) -> bool:
        """Return True once the link was closed."""
        return self._state is PeerState.CLOSED

    @property
    def pending_candidates(self) -> int:
        """Return the number of remote candidates waiting for the remote description."""
        return len(self._pending_candidates)

    @property
    def has_remote_description(self) -> bool:
        """Return True once the remote description was applied."""
        return self.pc.remoteDescription is not None

    def _transition(self, new_state: PeerState) -> None:
        old_state = self._state
        if new_state is not PeerState.CLOSED and new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise NegotiationError(
                self.user_id, f"invalid transition {old_state.value} -> {new_state.value}"
            )
        if old_state is new_state:
            return
        self._state = new_state
        self._logger.debug("State %s -> %s", old_state.value, new_state.value)
        if new_state in (PeerState.CONNECTED, PeerState.CLOSED):
            self._cancel_timeout()
        if self._on_state_change is not None:
            try:
                self._on_state_change(self, old_state, new_state)
            except Exception:
                self._logger.exception("Error in peer state callback")

    def _check_can_move(self, new_state: PeerState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise NegotiationError(
                self.user_id, f"cannot move to {new_state.value} from {self._state.value}"
            )

    async def create_offer(self) -> SessionDescription:
        """Create and apply the local offer."""
        self._check_can_move(PeerState.OFFER_SENT)
        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except Exception as err:
            raise NegotiationError(self.user_id, f"cannot create offer: {err}") from err
        self._transition(PeerState.OFFER_SENT)
        return _from_rtc(self.pc.localDescription)

    async def accept_offer(self, offer: SessionDescription) -> SessionDescription:
        """Apply a remote offer and return the local answer."""
        if offer.type != "offer":
            raise NegotiationError(self.user_id, f"expected an offer, got {offer.type!r}")
        self._transition(PeerState.OFFER_RECEIVED)
        try:
            await self.pc.setRemoteDescription(_to_rtc(offer))
        except Exception as err:
            raise NegotiationError(self.user_id, f"cannot apply offer: {err}") from err
        await self._flush_candidates()
        try:
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except Exception as err:
            raise NegotiationError(self.user_id, f"cannot create answer: {err}") from err
        self._transition(PeerState.ANSWER_SENT)
        self._advance_if_media_connected()
        return _from_rtc(self.pc.localDescription)

    async def accept_answer(self, answer: SessionDescription) -> None:
        """Apply the remote answer to our offer."""
        if answer.type != "answer":
            raise NegotiationError(self.user_id, f"expected an answer, got {answer.type!r}")
        self._transition(PeerState.ANSWER_RECEIVED)
        try:
            await self.pc.setRemoteDescription(_to_rtc(answer))
        except Exception as err:
            raise NegotiationError(self.user_id, f"cannot apply answer: {err}") from err
        await self._flush_candidates()
        self._advance_if_media_connected()

    async def add_remote_candidate(self, candidate: IceCandidatePayload) -> None:
        """Apply a remote candidate, or hold it until the remote description is set."""
        if self.closed:
            self._logger.debug("Ignoring candidate for closed link")
            return
        if not self.has_remote_description:
            self._pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            self._logger.debug("Applying %d early candidate(s)", len(pending))
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, payload: IceCandidatePayload) -> None:
        line = payload.candidate.strip()
        if line.startswith("candidate:"):
            line = line[len("candidate:") :]
        if not line:
            # End-of-candidates marker
            return
        try:
            candidate = candidate_from_sdp(line)
            candidate.sdpMid = payload.sdp_mid
            candidate.sdpMLineIndex = payload.sdp_mline_index
            await self.pc.addIceCandidate(candidate)
        except Exception as err:
            raise NegotiationError(self.user_id, f"cannot apply candidate: {err}") from err

    def media_state_changed(self, connection_state: str) -> None:
        """Track the media connection state reported by the peer connection."""
        self._logger.debug("Media connection %s", connection_state)
        if connection_state == "connected":
            self._media_connected = True
            self._advance_if_media_connected()

    def _advance_if_media_connected(self) -> None:
        if self._media_connected and self._state in (
            PeerState.ANSWER_SENT,
            PeerState.ANSWER_RECEIVED,
        ):
            self._transition(PeerState.CONNECTED)

    def arm_timeout(self, timeout_s: float, on_timeout: Callable[[PeerLink], None]) -> None:
        """Call on_timeout if the link is not CONNECTED within timeout_s seconds."""
        self._cancel_timeout()

        def _expired() -> None:
            self._timeout_handle = None
            if self._state not in (PeerState.CONNECTED, PeerState.CLOSED):
                self._logger.warning(
                    "Negotiation did not complete within %.1fs (state %s)",
                    timeout_s,
                    self._state.value,
                )
                on_timeout(self)

        self._timeout_handle = asyncio.get_running_loop().call_later(timeout_s, _expired)

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    async def close(self) -> None:
        """Close the peer connection. Calling this twice is a no-op."""
        if self.closed:
            return
        self._pending_candidates.clear()
        self._transition(PeerState.CLOSED)
        try:
            await self.pc.close()
        except Exception:
            self._logger.exception("Error closing peer connection")
