"""Typed channel messages on top of a broadcast topic."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, TypeVar

from aiovoicechat.errors import NegotiationError, SignalingDeliveryError
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
from aiovoicechat.models.types import SignalingMessage, TopicPurpose
from aiovoicechat.transport.base import BroadcastTransport, Subscription
from aiovoicechat.util import topic_name

logger = logging.getLogger(__name__)

SignalingHandler = Callable[[SignalingMessage], Awaitable[None]]
"""Coroutine called with each inbound message meant for the local user."""

_T = TypeVar("_T")


class SignalingChannel:
    """
    The local user's view of one channel topic.

    Outbound messages are stamped with the local user id. Inbound messages are
    filtered (own messages, messages addressed to someone else and malformed
    payloads are dropped) and handed to the handler one at a time, in arrival
    order, from a single dispatcher task.
    """

    _subscription: Subscription | None
    _dispatcher: asyncio.Task[None] | None
    _inbox: asyncio.Queue[SignalingMessage]

    def __init__(
        self,
        transport: BroadcastTransport,
        channel_id: str,
        user_id: str,
        *,
        purpose: TopicPurpose = TopicPurpose.VOICE,
        retry_backoff_s: float = 0.5,
    ) -> None:
        """
        Create a channel for user_id on channel_id.

        Args:
            transport: Broadcast transport carrying the topic.
            channel_id: Voice channel to join.
            user_id: Local user.
            purpose: Selects the topic namespace.
            retry_backoff_s: Delay before retrying a failed subscribe or publish.
        """
        self._transport = transport
        self.channel_id = channel_id
        self.user_id = user_id
        self.topic = topic_name(purpose, channel_id)
        self._retry_backoff_s = retry_backoff_s
        self._handler: SignalingHandler | None = None
        self._subscription = None
        self._dispatcher = None
        self._inbox = asyncio.Queue()
        self._logger = logger.getChild(self.topic)

    @property
    def subscribed(self) -> bool:
        """Return True while the topic subscription is live."""
        return self._subscription is not None and self._subscription.active

    def set_handler(self, handler: SignalingHandler | None) -> None:
        """Set the coroutine receiving inbound messages."""
        self._handler = handler

    async def open(self) -> None:
        """
        Subscribe to the topic and start dispatching.

        Raises:
            SignalingDeliveryError: If subscribing failed twice.
        """
        if self.subscribed:
            self._logger.debug("Already subscribed")
            return
        self._subscription = await self._with_retry(
            "subscribe", lambda: self._transport.subscribe(self.topic, self._on_raw_message)
        )
        self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())
        self._logger.debug("Subscribed as %s", self.user_id)

    async def close(self) -> None:
        """Unsubscribe and drop undelivered messages. Calling this twice is a no-op."""
        subscription, self._subscription = self._subscription, None
        dispatcher, self._dispatcher = self._dispatcher, None
        if subscription is not None:
            try:
                await subscription.unsubscribe()
            except SignalingDeliveryError as err:
                self._logger.warning("Unsubscribe failed: %s", err)
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            dispatcher.cancel()
            with suppress(asyncio.CancelledError):
                await dispatcher
        while not self._inbox.empty():
            self._inbox.get_nowait()

    async def announce_presence(self) -> None:
        """Tell the channel the local user joined."""
        await self._publish(UserJoinedMessage(user_id=self.user_id))

    async def announce_departure(self) -> None:
        """Tell the channel the local user left."""
        await self._publish(UserLeftMessage(user_id=self.user_id))

    async def send_heartbeat(self) -> None:
        """Tell the channel the local user is still here."""
        await self._publish(HeartbeatMessage(user_id=self.user_id))

    async def send_offer(self, target_user_id: str, offer: SessionDescription) -> None:
        """Send an offer to target_user_id."""
        await self._publish(
            OfferMessage(offer=offer, from_user_id=self.user_id, to_user_id=target_user_id)
        )

    async def send_answer(self, target_user_id: str, answer: SessionDescription) -> None:
        """Send an answer to the offer of target_user_id."""
        await self._publish(
            AnswerMessage(answer=answer, to_user_id=target_user_id, from_user_id=self.user_id)
        )

    async def send_candidate(self, target_user_id: str, candidate: IceCandidatePayload) -> None:
        """Send a network candidate to target_user_id."""
        await self._publish(
            IceCandidateMessage(
                candidate=candidate, from_user_id=self.user_id, to_user_id=target_user_id
            )
        )

    async def send_audio_chunk(
        self,
        audio_data: str,
        timestamp: int,
        *,
        sequence: int | None = None,
        codec: str | None = None,
    ) -> None:
        """Publish one base64 encoded audio fragment."""
        await self._publish(
            AudioChunkMessage(
                audio_data=audio_data,
                user_id=self.user_id,
                timestamp=timestamp,
                sequence=sequence,
                codec=codec,
            )
        )

    async def _publish(self, message: SignalingMessage) -> None:
        payload = message.to_dict()
        await self._with_retry(
            f"publish {payload.get('event')}",
            lambda: self._transport.broadcast(self.topic, payload),
        )

    async def _with_retry(self, action: str, operation: Callable[[], Awaitable[_T]]) -> _T:
        try:
            return await operation()
        except SignalingDeliveryError as err:
            self._logger.warning(
                "Failed to %s (%s), retrying in %.1fs", action, err, self._retry_backoff_s
            )
        await asyncio.sleep(self._retry_backoff_s)
        return await operation()

    def _on_raw_message(self, raw: dict[str, Any]) -> None:
        try:
            message = SignalingMessage.from_dict(raw)
        except Exception:
            self._logger.warning("Discarding malformed message: %.200s", raw)
            return
        if message.sender_id == self.user_id:
            return
        target = message.target_id
        if target is not None and target != self.user_id:
            return
        self._inbox.put_nowait(message)

    async def _dispatch_loop(self) -> None:
        # close() from inside a handler detaches this task instead of cancelling it
        while self._dispatcher is asyncio.current_task():
            message = await self._inbox.get()
            if self._handler is None:
                self._logger.debug("No handler, dropping %s", type(message).__name__)
                continue
            try:
                await self._handler(message)
            except asyncio.CancelledError:
                raise
            except NegotiationError as err:
                self._logger.warning("Negotiation with %s failed: %s", err.user_id, err)
            except Exception:
                self._logger.exception("Error handling %s", type(message).__name__)
