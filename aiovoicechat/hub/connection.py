"""Represents a single transport client connected to the hub."""

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, cast

from aiohttp import WSMsgType, web

from aiovoicechat.models.hub import (
    TopicAckMessage,
    TopicAckPayload,
    TopicBroadcastMessage,
    TopicDeliveryMessage,
    TopicErrorMessage,
    TopicErrorPayload,
    TopicSubscribeMessage,
    TopicUnsubscribeMessage,
)
from aiovoicechat.models.types import HubClientMessage, HubServerMessage

MAX_PENDING_MSG = 4096


logger = logging.getLogger(__name__)

# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .server import BroadcastHub


class HubConnection:
    """
    A WebSocket connection from one transport client.

    Outgoing messages go through a bounded queue drained by a writer task, so a
    slow client never blocks delivery to the other subscribers of a topic.
    """

    _hub: "BroadcastHub"
    _request: web.Request
    _wsock: web.WebSocketResponse
    _writer_task: asyncio.Task[None] | None = None
    """Task responsible for sending queued messages."""
    _message_loop_task: asyncio.Task[None] | None = None
    """Task responsible for receiving and processing messages."""
    _to_write: asyncio.Queue[HubServerMessage]
    """Queue for messages to be sent to the client through the WebSocket."""
    _topics: set[str]
    """Topics this connection is subscribed to."""
    _disconnecting: bool = False
    """Flag to prevent multiple concurrent disconnect tasks."""

    def __init__(self, hub: "BroadcastHub", request: web.Request) -> None:
        """
        DO NOT CALL THIS CONSTRUCTOR. INTERNAL USE ONLY.

        Use BroadcastHub.on_client_connect instead.
        """
        self._hub = hub
        self._request = request
        self._wsock = web.WebSocketResponse(heartbeat=55)
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self._topics = set()
        self._logger = logger.getChild(str(request.remote))

    @property
    def websocket_connection(self) -> web.WebSocketResponse:
        """Return the WebSocket of this connection."""
        return self._wsock

    @property
    def topics(self) -> frozenset[str]:
        """Return the topics this connection is subscribed to."""
        return frozenset(self._topics)

    def send_message(self, message: HubServerMessage) -> None:
        """Enqueue a message for this client, dropping the client if it cannot keep up."""
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            if not self._disconnecting:
                self._logger.error("Message queue full, client too slow - disconnecting")
                task = self._hub.loop.create_task(self.disconnect())
                task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)

    async def disconnect(self) -> None:
        """Close this connection and leave all topics."""
        if self._disconnecting:
            return
        self._disconnecting = True
        current_task = asyncio.current_task()
        for task in (self._writer_task, self._message_loop_task):
            if task is not None and not task.done() and task is not current_task:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if not self._wsock.closed:
            await self._wsock.close()
        self._hub._remove_connection(self)  # noqa: SLF001
        self._topics.clear()
        self._logger.debug("Client disconnected")

    async def _handle_client(self) -> None:
        """
        Handle the complete WebSocket lifecycle.

        Only called by BroadcastHub during connection handling.
        """
        try:
            async with asyncio.timeout(10):
                await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("Timeout preparing request")
            raise
        self._logger.debug("Connection established")
        self._writer_task = self._hub.loop.create_task(self._writer())
        self._message_loop_task = self._hub.loop.create_task(self._run_message_loop())
        try:
            await self._message_loop_task
        except asyncio.CancelledError:
            self._logger.debug("Message loop task was cancelled")
        finally:
            await self.disconnect()

    async def _run_message_loop(self) -> None:
        try:
            async for msg in self._wsock:
                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break
                if msg.type != WSMsgType.TEXT:
                    self._logger.warning("Ignoring non-text message of type %s", msg.type)
                    continue
                try:
                    message = HubClientMessage.from_json(cast("str", msg.data))
                except Exception:
                    self._logger.warning("Rejecting malformed message: %.200s", msg.data)
                    self.send_message(
                        TopicErrorMessage(payload=TopicErrorPayload(error="malformed message"))
                    )
                    continue
                self._handle_message(message)
        except asyncio.CancelledError:
            self._logger.debug("Message loop cancelled")
        except Exception:
            self._logger.exception("Unexpected error inside websocket API")

    def _handle_message(self, message: HubClientMessage) -> None:
        match message:
            case TopicSubscribeMessage(payload=payload):
                self._topics.add(payload.topic)
                self._hub._subscribe(self, payload.topic)  # noqa: SLF001
                self._logger.debug("Subscribed to %s", payload.topic)
                self.send_message(
                    TopicAckMessage(payload=TopicAckPayload(request_id=payload.request_id))
                )
            case TopicUnsubscribeMessage(payload=payload):
                self._topics.discard(payload.topic)
                self._hub._unsubscribe(self, payload.topic)  # noqa: SLF001
                self._logger.debug("Unsubscribed from %s", payload.topic)
                self.send_message(
                    TopicAckMessage(payload=TopicAckPayload(request_id=payload.request_id))
                )
            case TopicBroadcastMessage(payload=payload):
                self._hub.publish(TopicDeliveryMessage(payload=payload))
            case _:
                self._logger.debug("Unhandled message type: %s", type(message).__name__)

    async def _writer(self) -> None:
        try:
            while not self._wsock.closed:
                item = await self._to_write.get()
                try:
                    await self._wsock.send_str(item.to_json())
                except ConnectionError:
                    self._logger.warning("Connection error sending data, ending writer task")
                    break
        except asyncio.CancelledError:
            pass
        except Exception:
            self._logger.exception("Error in writer task for client")
        finally:
            if self._message_loop_task and not self._message_loop_task.done():
                self._message_loop_task.cancel()
