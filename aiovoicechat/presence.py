"""Tracks which remote users are present in a channel."""

from __future__ import annotations

import time


class PresenceTracker:
    """
    The set of remote users seen on a channel topic.

    Users enter on user-joined (or any traffic from an unknown user) and leave
    on user-left, explicit clearing, or when nothing was heard from them for
    longer than the timeout.
    """

    def __init__(self, timeout_s: float = 0.0) -> None:
        """
        Create an empty tracker.

        Args:
            timeout_s: Seconds of silence after which evict_stale() drops a user,
                0 to never evict.
        """
        self._timeout_s = timeout_s
        self._last_seen: dict[str, float] = {}

    @property
    def users(self) -> frozenset[str]:
        """Return the users currently present."""
        return frozenset(self._last_seen)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._last_seen

    def __len__(self) -> int:
        return len(self._last_seen)

    def mark_joined(self, user_id: str, now: float | None = None) -> bool:
        """Record user_id as present. Return True if the user was not present before."""
        added = user_id not in self._last_seen
        self._last_seen[user_id] = time.monotonic() if now is None else now
        return added

    def touch(self, user_id: str, now: float | None = None) -> bool:
        """Refresh user_id's liveness. Return True if the user was unknown and got added."""
        return self.mark_joined(user_id, now)

    def mark_left(self, user_id: str) -> bool:
        """Remove user_id. Return True if the user was present."""
        return self._last_seen.pop(user_id, None) is not None

    def evict_stale(self, now: float | None = None) -> list[str]:
        """Remove and return the users that timed out."""
        if self._timeout_s <= 0:
            return []
        if now is None:
            now = time.monotonic()
        stale = [
            user_id
            for user_id, last_seen in self._last_seen.items()
            if now - last_seen > self._timeout_s
        ]
        for user_id in stale:
            del self._last_seen[user_id]
        return stale

    def clear(self) -> None:
        """Forget every user."""
        self._last_seen.clear()
