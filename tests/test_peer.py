from __future__ import annotations

import asyncio

import pytest

from aiovoicechat.errors import NegotiationError
from aiovoicechat.models.signaling import IceCandidatePayload, SessionDescription
from aiovoicechat.models.types import PeerState
from aiovoicechat.peer import PeerLink

from fakes import BROKEN_SDP, FAKE_SDP, FakePeerConnection, wait_for

OFFER = SessionDescription(type="offer", sdp=FAKE_SDP)
ANSWER = SessionDescription(type="answer", sdp=FAKE_SDP)
CANDIDATE = IceCandidatePayload(
    candidate="candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx "
    "raddr 10.0.0.2 rport 46154",
    sdp_mid="0",
    sdp_mline_index=0,
)


def _link(pc: FakePeerConnection | None = None) -> tuple[PeerLink, list[PeerState]]:
    states: list[PeerState] = []
    fake = pc or FakePeerConnection()
    link = PeerLink("userY", fake, on_state_change=lambda link, old, new: states.append(new))
    fake.on("connectionstatechange")(lambda: link.media_state_changed(fake.connectionState))
    return link, states


@pytest.mark.asyncio
async def test_offering_side_walks_to_connected() -> None:
    link, states = _link()
    offer = await link.create_offer()
    assert offer.type == "offer"
    assert link.state is PeerState.OFFER_SENT

    await link.accept_answer(ANSWER)
    assert states == [PeerState.OFFER_SENT, PeerState.ANSWER_RECEIVED, PeerState.CONNECTED]


@pytest.mark.asyncio
async def test_answering_side_walks_to_connected() -> None:
    link, states = _link()
    answer = await link.accept_offer(OFFER)
    assert answer.type == "answer"
    assert states == [PeerState.OFFER_RECEIVED, PeerState.ANSWER_SENT, PeerState.CONNECTED]


@pytest.mark.asyncio
async def test_invalid_transitions_raise() -> None:
    link, _ = _link()
    with pytest.raises(NegotiationError):
        await link.accept_answer(ANSWER)
    assert link.state is PeerState.NEW

    await link.create_offer()
    with pytest.raises(NegotiationError):
        await link.create_offer()
    with pytest.raises(NegotiationError):
        await link.accept_offer(OFFER)
    with pytest.raises(NegotiationError):
        await link.accept_answer(OFFER)


@pytest.mark.asyncio
async def test_bad_remote_description_raises_negotiation_error() -> None:
    link, _ = _link()
    await link.create_offer()
    with pytest.raises(NegotiationError) as exc_info:
        await link.accept_answer(SessionDescription(type="answer", sdp=BROKEN_SDP))
    assert exc_info.value.user_id == "userY"


@pytest.mark.asyncio
async def test_early_candidates_wait_for_remote_description() -> None:
    pc = FakePeerConnection()
    link, _ = _link(pc)
    await link.create_offer()
    await link.add_remote_candidate(CANDIDATE)
    await link.add_remote_candidate(IceCandidatePayload(candidate=""))
    assert link.pending_candidates == 2
    assert pc.candidates == []

    await link.accept_answer(ANSWER)
    assert link.pending_candidates == 0
    # The empty end-of-candidates marker is not applied
    assert len(pc.candidates) == 1
    candidate = pc.candidates[0]
    assert candidate.ip == "203.0.113.7"
    assert candidate.type == "srflx"
    assert candidate.sdpMLineIndex == 0

    await link.add_remote_candidate(CANDIDATE)
    assert len(pc.candidates) == 2


@pytest.mark.asyncio
async def test_garbage_candidate_raises() -> None:
    link, _ = _link()
    await link.accept_offer(OFFER)
    with pytest.raises(NegotiationError):
        await link.add_remote_candidate(IceCandidatePayload(candidate="candidate:nonsense"))


@pytest.mark.asyncio
async def test_close_is_idempotent_and_final() -> None:
    pc = FakePeerConnection()
    link, states = _link(pc)
    await link.create_offer()
    await link.close()
    await link.close()
    assert link.closed
    assert pc.closed
    assert states == [PeerState.OFFER_SENT, PeerState.CLOSED]

    with pytest.raises(NegotiationError):
        await link.accept_answer(ANSWER)
    await link.add_remote_candidate(CANDIDATE)
    assert pc.candidates == []


@pytest.mark.asyncio
async def test_timeout_fires_only_before_connected() -> None:
    expired: list[PeerLink] = []
    link, _ = _link()
    await link.create_offer()
    link.arm_timeout(0.02, expired.append)
    await wait_for(lambda: expired == [link])

    other, _ = _link()
    other.arm_timeout(0.02, expired.append)
    await other.accept_offer(OFFER)
    assert other.state is PeerState.CONNECTED
    await asyncio.sleep(0.05)
    assert expired == [link]
