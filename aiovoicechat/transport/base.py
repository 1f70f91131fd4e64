"""Interface of a broadcast topic transport."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

# Callback invoked with each JSON object published on a subscribed topic.
MessageHandler = Callable[[dict[str, Any]], None]


class Subscription(ABC):
    """A live subscription to one topic."""

    topic: str
    """Name of the subscribed topic."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """Return True until the subscription was released."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivering messages. Calling this twice is a no-op."""


class BroadcastTransport(ABC):
    """
    Named publish/subscribe topics without persistence or delivery guarantees.

    Every message published on a topic is delivered to every current subscriber
    of that topic, including subscribers owned by the publisher itself.
    Implementations raise SignalingDeliveryError when a subscribe or publish
    cannot be carried out.
    """

    @abstractmethod
    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        """Subscribe handler to topic."""

    @abstractmethod
    async def broadcast(self, topic: str, message: dict[str, Any]) -> None:
        """Publish a JSON-serializable object on topic."""
