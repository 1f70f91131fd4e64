"""
Wire messages between a WebSocket transport client and the broadcast hub.

Clients subscribe to topics and publish channel messages; the hub relays every
published message to all subscribers of its topic, including the publisher.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import HubClientMessage, HubServerMessage


@dataclass
class TopicRequestPayload(DataClassORJSONMixin):
    """Topic operation that the hub acknowledges."""

    topic: str
    """Name of the topic."""
    request_id: int
    """Client chosen id echoed in the acknowledgement."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if not self.topic:
            raise ValueError("topic must not be empty")


# Client -> Hub: topic/subscribe
@dataclass
class TopicSubscribeMessage(HubClientMessage):
    """Start receiving messages published on a topic."""

    payload: TopicRequestPayload
    type: Literal["topic/subscribe"] = "topic/subscribe"


# Client -> Hub: topic/unsubscribe
@dataclass
class TopicUnsubscribeMessage(HubClientMessage):
    """Stop receiving messages published on a topic."""

    payload: TopicRequestPayload
    type: Literal["topic/unsubscribe"] = "topic/unsubscribe"


# Client -> Hub: topic/broadcast
@dataclass
class TopicBroadcastPayload(DataClassORJSONMixin):
    """A channel message to publish."""

    topic: str
    """Name of the topic."""
    message: dict[str, Any]
    """JSON object relayed unchanged to subscribers."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if not self.topic:
            raise ValueError("topic must not be empty")


@dataclass
class TopicBroadcastMessage(HubClientMessage):
    """Publish a message on a topic."""

    payload: TopicBroadcastPayload
    type: Literal["topic/broadcast"] = "topic/broadcast"


# Hub -> Client: topic/message
@dataclass
class TopicDeliveryMessage(HubServerMessage):
    """A message published on a topic the client subscribed to."""

    payload: TopicBroadcastPayload
    type: Literal["topic/message"] = "topic/message"


# Hub -> Client: topic/ack
@dataclass
class TopicAckPayload(DataClassORJSONMixin):
    """Acknowledgement of a topic request."""

    request_id: int
    """Id of the acknowledged request."""


@dataclass
class TopicAckMessage(HubServerMessage):
    """The hub completed a subscribe or unsubscribe request."""

    payload: TopicAckPayload
    type: Literal["topic/ack"] = "topic/ack"


# Hub -> Client: topic/error
@dataclass
class TopicErrorPayload(DataClassORJSONMixin):
    """Description of a rejected request."""

    error: str
    """Human readable reason."""
    request_id: int | None = None
    """Id of the rejected request, if the request carried one."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class TopicErrorMessage(HubServerMessage):
    """The hub rejected a request."""

    payload: TopicErrorPayload
    type: Literal["topic/error"] = "topic/error"
