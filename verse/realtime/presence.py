"""
verse.realtime.presence — Who is connected right now
=====================================================

Process-local and non-durable: a restart forgets everyone, and clients
reconnect.  A user may hold several sockets (tabs, devices); they count as
online until the last one closes.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Hashable


class PresenceRegistry:
    """Maps user ids to the set of their live connection handles."""

    def __init__(self) -> None:
        self._connections: dict[int, set[Hashable]] = defaultdict(set)

    def connect(self, user_id: int, conn: Hashable) -> bool:
        """Register *conn*.  True when this is the user's first connection."""
        first = not self._connections.get(user_id)
        self._connections[user_id].add(conn)
        return first

    def disconnect(self, user_id: int, conn: Hashable) -> bool:
        """Forget *conn*.  True when the user has no connections left."""
        conns = self._connections.get(user_id)
        if not conns:
            return False
        conns.discard(conn)
        if conns:
            return False
        del self._connections[user_id]
        return True

    def is_online(self, user_id: int) -> bool:
        return bool(self._connections.get(user_id))

    def online_users(self) -> list[int]:
        return sorted(uid for uid, conns in self._connections.items() if conns)

    def connections(self, user_id: int) -> set[Hashable]:
        return set(self._connections.get(user_id, ()))
