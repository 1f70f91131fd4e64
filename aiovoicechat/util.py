"""Utility functions for aiovoicechat."""

from __future__ import annotations

import socket
import time

from aiovoicechat.models.types import TopicPurpose


def topic_name(purpose: TopicPurpose, channel_id: str, user_id: str | None = None) -> str:
    """
    Build the broadcast topic name for a channel.

    Each purpose is its own namespace, so signaling and fragment traffic of the
    same channel never reach each other's subscribers.
    """
    if not channel_id:
        raise ValueError("channel_id must not be empty")
    name = f"{purpose.value}:{channel_id}"
    if user_id is not None:
        name = f"{name}:{user_id}"
    return name


def now_ms() -> int:
    """Return the wall clock time in milliseconds."""
    return time.time_ns() // 1_000_000


def get_local_ip() -> str | None:
    """Return the address of the interface used for outbound traffic, if any."""
    # Connecting a UDP socket selects a route without sending a packet
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect(("192.0.2.1", 9))
        except OSError:
            return None
        address: str = sock.getsockname()[0]
    return address
