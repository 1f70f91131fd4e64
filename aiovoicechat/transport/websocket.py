"""BroadcastTransport that talks to a BroadcastHub over a WebSocket."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from contextlib import suppress
from typing import Any

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

from aiovoicechat.errors import SignalingDeliveryError
from aiovoicechat.models.hub import (
    TopicAckMessage,
    TopicBroadcastMessage,
    TopicBroadcastPayload,
    TopicDeliveryMessage,
    TopicErrorMessage,
    TopicRequestPayload,
    TopicSubscribeMessage,
    TopicUnsubscribeMessage,
)
from aiovoicechat.models.types import HubServerMessage

from .base import BroadcastTransport, MessageHandler, Subscription

logger = logging.getLogger(__name__)


class _HubSubscription(Subscription):
    def __init__(
        self, transport: WebSocketBroadcastTransport, topic: str, handler: MessageHandler
    ) -> None:
        self.topic = topic
        self.handler = handler
        self._transport = transport
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._transport._release(self)  # noqa: SLF001


class WebSocketBroadcastTransport(BroadcastTransport):
    """
    Broadcast transport backed by a remote BroadcastHub.

    One WebSocket carries every topic of this transport. Local handlers of the
    same topic share a single hub subscription; the hub subscription is
    released together with the last local handler.
    """

    _session: ClientSession | None
    """aiohttp session used to open the WebSocket."""
    _owns_session: bool
    """Whether this transport owns and should close the session."""
    _ws: ClientWebSocketResponse | None = None
    """WebSocket connection to the hub."""
    _reader_task: asyncio.Task[None] | None = None
    """Background task reading messages from the hub."""
    _send_lock: asyncio.Lock
    """Lock for serializing WebSocket message sends."""
    _handlers: defaultdict[str, list[_HubSubscription]]
    """Local subscriptions per topic."""
    _pending: dict[int, asyncio.Future[None]]
    """Requests awaiting a topic/ack or topic/error, keyed by request id."""

    def __init__(
        self,
        url: str,
        *,
        session: ClientSession | None = None,
        request_timeout: float = 5.0,
    ) -> None:
        """
        Create a transport for the hub at url.

        Args:
            url: WebSocket url of the hub, e.g. ws://127.0.0.1:8929/broadcast.
            session: Optional aiohttp ClientSession. If None, a session is created
                and managed by this transport.
            request_timeout: Seconds to wait for the hub to acknowledge a
                subscribe request.
        """
        self._url = url
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self._send_lock = asyncio.Lock()
        self._handlers = defaultdict(list)
        self._pending = {}
        self._request_ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        """Return True if the WebSocket to the hub is open."""
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        """Open the WebSocket to the hub."""
        if self.connected:
            logger.debug("Already connected")
            return
        if self._session is None:
            self._session = ClientSession()
        logger.info("Connecting to broadcast hub at %s", self._url)
        try:
            self._ws = await self._session.ws_connect(self._url, heartbeat=30)
        except (ClientError, OSError, TimeoutError) as err:
            raise SignalingDeliveryError(f"Cannot connect to hub at {self._url}") from err
        self._reader_task = asyncio.get_running_loop().create_task(self._reader_loop())

    async def close(self) -> None:
        """Close the WebSocket and drop all subscriptions."""
        current_task = asyncio.current_task()
        if self._reader_task is not None:
            if self._reader_task is not current_task:
                self._reader_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        for subscriptions in self._handlers.values():
            for subscription in subscriptions:
                subscription._active = False  # noqa: SLF001
        self._handlers.clear()
        self._fail_pending("Transport closed")

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        """Subscribe handler to topic, joining the topic on the hub if needed."""
        subscription = _HubSubscription(self, topic, handler)
        if not self._handlers.get(topic):
            await self._request(
                TopicSubscribeMessage(
                    payload=TopicRequestPayload(topic=topic, request_id=next(self._request_ids))
                )
            )
        self._handlers[topic].append(subscription)
        return subscription

    async def broadcast(self, topic: str, message: dict[str, Any]) -> None:
        """Publish message on topic."""
        outgoing = TopicBroadcastMessage(
            payload=TopicBroadcastPayload(topic=topic, message=message)
        )
        await self._send_message(outgoing.to_json())

    async def _release(self, subscription: _HubSubscription) -> None:
        subscriptions = self._handlers.get(subscription.topic)
        if not subscriptions or subscription not in subscriptions:
            return
        subscriptions.remove(subscription)
        if subscriptions:
            return
        del self._handlers[subscription.topic]
        if not self.connected:
            return
        await self._request(
            TopicUnsubscribeMessage(
                payload=TopicRequestPayload(
                    topic=subscription.topic, request_id=next(self._request_ids)
                )
            )
        )

    async def _request(self, message: TopicSubscribeMessage | TopicUnsubscribeMessage) -> None:
        request_id = message.payload.request_id
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send_message(message.to_json())
            await asyncio.wait_for(future, timeout=self._request_timeout)
        except TimeoutError as err:
            raise SignalingDeliveryError(
                f"Hub did not acknowledge {message.type} for {message.payload.topic}"
            ) from err
        finally:
            self._pending.pop(request_id, None)

    async def _send_message(self, payload: str) -> None:
        if not self.connected:
            raise SignalingDeliveryError("WebSocket is not connected")
        assert self._ws is not None
        async with self._send_lock:
            try:
                await self._ws.send_str(payload)
            except (ClientError, ConnectionError, RuntimeError) as err:
                raise SignalingDeliveryError("Failed to send to hub") from err

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(SignalingDeliveryError(reason))
        self._pending.clear()

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                self._handle_ws_message(msg)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("WebSocket reader encountered an error")
        finally:
            self._fail_pending("Connection to hub lost")

    def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.TEXT:
            self._handle_json_message(msg.data)
        elif msg.type is WSMsgType.BINARY:
            logger.warning("Ignoring binary message from hub")
        elif msg.type is WSMsgType.ERROR:
            logger.error("WebSocket error: %s", self._ws.exception() if self._ws else "unknown")

    def _handle_json_message(self, data: str) -> None:
        try:
            message = HubServerMessage.from_json(data)
        except Exception:
            logger.exception("Failed to parse hub message: %s", data)
            return

        match message:
            case TopicDeliveryMessage(payload=payload):
                self._deliver(payload.topic, payload.message)
            case TopicAckMessage(payload=payload):
                future = self._pending.get(payload.request_id)
                if future is not None and not future.done():
                    future.set_result(None)
            case TopicErrorMessage(payload=payload):
                logger.warning("Hub rejected request %s: %s", payload.request_id, payload.error)
                future = self._pending.get(payload.request_id) if payload.request_id else None
                if future is not None and not future.done():
                    future.set_exception(SignalingDeliveryError(payload.error))
            case _:
                logger.debug("Unhandled hub message type: %s", type(message).__name__)

    def _deliver(self, topic: str, message: dict[str, Any]) -> None:
        for subscription in list(self._handlers.get(topic, ())):
            try:
                subscription.handler(message)
            except Exception:
                logger.exception("Error in message handler for topic %s", topic)
