"""In-process broadcast transport."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from typing import Any

from aiovoicechat.errors import SignalingDeliveryError

from .base import BroadcastTransport, MessageHandler, Subscription

logger = logging.getLogger(__name__)


class InMemoryBroadcastHub:
    """
    Topic registry shared by all InMemoryTransport instances of one process.

    Messages are delivered on the next loop iteration, never synchronously
    inside broadcast(), which mirrors a networked hub closely enough for
    multiple sessions to talk to each other inside one event loop.
    """

    def __init__(self) -> None:
        """Create an empty hub."""
        self._topics: defaultdict[str, list[_MemorySubscription]] = defaultdict(list)

    def subscriber_count(self, topic: str) -> int:
        """Return the number of live subscriptions on topic."""
        return len(self._topics.get(topic, ()))

    def _add(self, subscription: _MemorySubscription) -> None:
        self._topics[subscription.topic].append(subscription)

    def _remove(self, subscription: _MemorySubscription) -> None:
        subscribers = self._topics.get(subscription.topic)
        if subscribers is None:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._topics[subscription.topic]

    def _publish(self, topic: str, message: dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        for subscription in list(self._topics.get(topic, ())):
            # Each subscriber gets its own copy, like after a network round trip
            loop.call_soon(subscription.deliver, copy.deepcopy(message))


class _MemorySubscription(Subscription):
    def __init__(self, hub: InMemoryBroadcastHub, topic: str, handler: MessageHandler) -> None:
        self.topic = topic
        self._hub = hub
        self._handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, message: dict[str, Any]) -> None:
        if not self._active:
            return
        try:
            self._handler(message)
        except Exception:
            logger.exception("Error in message handler for topic %s", self.topic)

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._hub._remove(self)  # noqa: SLF001


class InMemoryTransport(BroadcastTransport):
    """BroadcastTransport backed by an InMemoryBroadcastHub."""

    def __init__(self, hub: InMemoryBroadcastHub) -> None:
        """Attach a new transport to hub."""
        self._hub = hub
        self._closed = False

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        """Subscribe handler to topic."""
        if self._closed:
            raise SignalingDeliveryError("Transport is closed")
        subscription = _MemorySubscription(self._hub, topic, handler)
        self._hub._add(subscription)  # noqa: SLF001
        return subscription

    async def broadcast(self, topic: str, message: dict[str, Any]) -> None:
        """Publish message on topic."""
        if self._closed:
            raise SignalingDeliveryError("Transport is closed")
        self._hub._publish(topic, message)  # noqa: SLF001

    def close(self) -> None:
        """Reject further subscribes and publishes."""
        self._closed = True
