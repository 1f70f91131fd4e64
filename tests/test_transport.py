from __future__ import annotations

import asyncio
import socket
from typing import Any

import pytest

from aiovoicechat.errors import SignalingDeliveryError
from aiovoicechat.hub import BroadcastHub
from aiovoicechat.transport import (
    InMemoryBroadcastHub,
    InMemoryTransport,
    WebSocketBroadcastTransport,
)

from fakes import wait_for


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_memory_broadcast_reaches_every_subscriber() -> None:
    hub = InMemoryBroadcastHub()
    first = InMemoryTransport(hub)
    second = InMemoryTransport(hub)
    received_first: list[dict[str, Any]] = []
    received_second: list[dict[str, Any]] = []
    await first.subscribe("voice:lobby", received_first.append)
    await second.subscribe("voice:lobby", received_second.append)
    await second.subscribe("audio:lobby", lambda message: pytest.fail("wrong topic"))

    await first.broadcast("voice:lobby", {"event": "heartbeat", "userId": "a"})
    await wait_for(lambda: len(received_first) == 1 and len(received_second) == 1)

    # The publisher hears its own message too
    assert received_first == [{"event": "heartbeat", "userId": "a"}]
    assert received_first[0] is not received_second[0]


@pytest.mark.asyncio
async def test_memory_unsubscribe_and_close() -> None:
    hub = InMemoryBroadcastHub()
    transport = InMemoryTransport(hub)
    received: list[dict[str, Any]] = []
    subscription = await transport.subscribe("voice:lobby", received.append)
    assert hub.subscriber_count("voice:lobby") == 1

    await subscription.unsubscribe()
    await subscription.unsubscribe()
    assert not subscription.active
    assert hub.subscriber_count("voice:lobby") == 0

    await transport.broadcast("voice:lobby", {"event": "heartbeat", "userId": "a"})
    await asyncio.sleep(0.01)
    assert received == []

    transport.close()
    with pytest.raises(SignalingDeliveryError):
        await transport.subscribe("voice:lobby", received.append)
    with pytest.raises(SignalingDeliveryError):
        await transport.broadcast("voice:lobby", {})


@pytest.mark.asyncio
async def test_memory_handler_errors_do_not_stop_delivery() -> None:
    hub = InMemoryBroadcastHub()
    transport = InMemoryTransport(hub)
    received: list[dict[str, Any]] = []

    def _broken(message: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    await transport.subscribe("voice:lobby", _broken)
    await transport.subscribe("voice:lobby", received.append)
    await transport.broadcast("voice:lobby", {"n": 1})
    await wait_for(lambda: len(received) == 1)


@pytest.mark.asyncio
async def test_websocket_transport_through_hub() -> None:
    loop = asyncio.get_running_loop()
    hub = BroadcastHub(loop, hub_name="test-hub")
    port = _get_free_port()
    await hub.start_server(port=port, host="127.0.0.1")
    url = f"ws://127.0.0.1:{port}{BroadcastHub.API_PATH}"

    alice = WebSocketBroadcastTransport(url)
    bob = WebSocketBroadcastTransport(url)
    try:
        await alice.connect()
        await bob.connect()

        alice_received: list[dict[str, Any]] = []
        bob_received: list[dict[str, Any]] = []
        bob_audio: list[dict[str, Any]] = []
        await alice.subscribe("voice:lobby", alice_received.append)
        bob_voice = await bob.subscribe("voice:lobby", bob_received.append)
        await bob.subscribe("audio:lobby", bob_audio.append)
        assert hub.subscriber_count("voice:lobby") == 2

        await alice.broadcast("voice:lobby", {"event": "user-joined", "userId": "alice"})
        await wait_for(lambda: len(alice_received) == 1 and len(bob_received) == 1)
        assert bob_received == [{"event": "user-joined", "userId": "alice"}]
        assert bob_audio == []

        await bob_voice.unsubscribe()
        await wait_for(lambda: hub.subscriber_count("voice:lobby") == 1)
        await alice.broadcast("voice:lobby", {"event": "heartbeat", "userId": "alice"})
        await wait_for(lambda: len(alice_received) == 2)
        assert len(bob_received) == 1
    finally:
        await alice.close()
        await bob.close()
        await hub.close()

    assert hub.connections == set()


@pytest.mark.asyncio
async def test_websocket_transport_unreachable_hub() -> None:
    transport = WebSocketBroadcastTransport(f"ws://127.0.0.1:{_get_free_port()}/broadcast")
    try:
        with pytest.raises(SignalingDeliveryError):
            await transport.connect()
        with pytest.raises(SignalingDeliveryError):
            await transport.broadcast("voice:lobby", {})
    finally:
        await transport.close()
