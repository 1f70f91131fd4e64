"""Broadcast hub server."""

from .connection import HubConnection
from .server import DEFAULT_PORT, MDNS_SERVICE_TYPE, BroadcastHub

__all__ = ["DEFAULT_PORT", "MDNS_SERVICE_TYPE", "BroadcastHub", "HubConnection"]
