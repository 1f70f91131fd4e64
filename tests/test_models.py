from __future__ import annotations

import orjson
import pytest

from aiovoicechat.models.hub import (
    TopicAckMessage,
    TopicAckPayload,
    TopicBroadcastMessage,
    TopicBroadcastPayload,
    TopicDeliveryMessage,
    TopicErrorMessage,
    TopicErrorPayload,
    TopicRequestPayload,
    TopicSubscribeMessage,
)
from aiovoicechat.models.signaling import (
    AnswerMessage,
    AudioChunkMessage,
    HeartbeatMessage,
    IceCandidateMessage,
    IceCandidatePayload,
    OfferMessage,
    SessionDescription,
    UserJoinedMessage,
    UserLeftMessage,
)
from aiovoicechat.models.types import HubClientMessage, HubServerMessage, SignalingMessage, TopicPurpose
from aiovoicechat.util import topic_name


def test_offer_uses_camel_case_keys() -> None:
    message = OfferMessage(
        offer=SessionDescription(type="offer", sdp="v=0"),
        from_user_id="userX",
        to_user_id="userY",
    )
    data = orjson.loads(message.to_json())
    assert data == {
        "event": "offer",
        "offer": {"type": "offer", "sdp": "v=0"},
        "fromUserId": "userX",
        "toUserId": "userY",
    }
    parsed = SignalingMessage.from_json(message.to_json())
    assert isinstance(parsed, OfferMessage)
    assert parsed.sender_id == "userX"
    assert parsed.target_id == "userY"


def test_answer_without_sender_parses() -> None:
    parsed = SignalingMessage.from_dict(
        {"event": "answer", "toUserId": "userX", "answer": {"type": "answer", "sdp": "v=0"}}
    )
    assert isinstance(parsed, AnswerMessage)
    assert parsed.sender_id is None
    assert parsed.target_id == "userX"
    assert "fromUserId" not in parsed.to_dict()


def test_candidate_keeps_browser_field_names() -> None:
    message = IceCandidateMessage(
        candidate=IceCandidatePayload(
            candidate="candidate:1 1 udp 2122260223 10.0.0.2 54321 typ host",
            sdp_mid="0",
            sdp_mline_index=0,
        ),
        from_user_id="userY",
        to_user_id="userX",
    )
    data = message.to_dict()
    assert data["event"] == "ice-candidate"
    assert data["candidate"]["sdpMid"] == "0"
    assert data["candidate"]["sdpMLineIndex"] == 0
    parsed = SignalingMessage.from_dict(data)
    assert parsed == message


def test_presence_messages() -> None:
    for cls, event in (
        (UserJoinedMessage, "user-joined"),
        (UserLeftMessage, "user-left"),
        (HeartbeatMessage, "heartbeat"),
    ):
        data = cls(user_id="userY").to_dict()
        assert data == {"event": event, "userId": "userY"}
        parsed = SignalingMessage.from_dict(data)
        assert isinstance(parsed, cls)
        assert parsed.sender_id == "userY"
        assert parsed.target_id is None


def test_audio_chunk_optional_fields() -> None:
    legacy = SignalingMessage.from_dict(
        {"event": "audio-chunk", "audioData": "AAAA", "userId": "userY", "timestamp": 5}
    )
    assert isinstance(legacy, AudioChunkMessage)
    assert legacy.sequence is None
    assert legacy.codec is None

    message = AudioChunkMessage(
        audio_data="AAAA", user_id="userY", timestamp=5, sequence=3, codec="pcm"
    )
    data = message.to_dict()
    assert data["audioData"] == "AAAA"
    assert data["sequence"] == 3
    assert data["codec"] == "pcm"


def test_unknown_event_is_rejected() -> None:
    with pytest.raises(Exception):
        SignalingMessage.from_dict({"event": "chat", "text": "hi"})


def test_invalid_session_description_type() -> None:
    with pytest.raises(ValueError):
        SessionDescription(type="bogus", sdp="v=0")


def test_hub_messages_roundtrip() -> None:
    subscribe = TopicSubscribeMessage(payload=TopicRequestPayload(topic="voice:lobby", request_id=1))
    assert isinstance(HubClientMessage.from_json(subscribe.to_json()), TopicSubscribeMessage)

    broadcast = TopicBroadcastMessage(
        payload=TopicBroadcastPayload(topic="voice:lobby", message={"event": "heartbeat"})
    )
    parsed = HubClientMessage.from_json(broadcast.to_json())
    assert isinstance(parsed, TopicBroadcastMessage)
    assert parsed.payload.message == {"event": "heartbeat"}

    delivery = TopicDeliveryMessage(payload=broadcast.payload)
    assert orjson.loads(delivery.to_json())["type"] == "topic/message"
    assert isinstance(HubServerMessage.from_json(delivery.to_json()), TopicDeliveryMessage)

    ack = TopicAckMessage(payload=TopicAckPayload(request_id=7))
    assert HubServerMessage.from_json(ack.to_json()) == ack

    error = TopicErrorMessage(payload=TopicErrorPayload(error="malformed message"))
    parsed_error = HubServerMessage.from_json(error.to_json())
    assert isinstance(parsed_error, TopicErrorMessage)
    assert parsed_error.payload.request_id is None


def test_topic_names_are_namespaced() -> None:
    assert topic_name(TopicPurpose.VOICE, "lobby") == "voice:lobby"
    assert topic_name(TopicPurpose.AUDIO, "lobby") == "audio:lobby"
    assert topic_name(TopicPurpose.AUDIO, "lobby", "userY") == "audio:lobby:userY"
    with pytest.raises(ValueError):
        topic_name(TopicPurpose.VOICE, "")
