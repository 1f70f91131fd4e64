"""Broadcast topic transports."""

from .base import BroadcastTransport, MessageHandler, Subscription
from .memory import InMemoryBroadcastHub, InMemoryTransport
from .websocket import WebSocketBroadcastTransport

__all__ = [
    "BroadcastTransport",
    "InMemoryBroadcastHub",
    "InMemoryTransport",
    "MessageHandler",
    "Subscription",
    "WebSocketBroadcastTransport",
]
