"""
verse.realtime.gateway — WebSocket hub: rooms, relays & presence
=================================================================

Every connected socket belongs to the room named after its user id, plus
any rooms it joins explicitly.  Routes and the WebSocket endpoint push
events through :meth:`RealtimeGateway.emit_to_room` and
:meth:`RealtimeGateway.broadcast`; nothing outside this module touches the
room table or the :class:`PresenceRegistry` directly.

Frames are JSON text in both directions::

    {"event": "receiveMessage", "data": {...}}

All state here is mutated on the event loop only, so no locking is needed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from functools import lru_cache
from typing import Any

from fastapi import WebSocket

from verse.realtime.presence import PresenceRegistry

logger = logging.getLogger(__name__)


def user_room(user_id: int) -> str:
    return str(user_id)


class RealtimeGateway:
    """Connection registry plus fan-out helpers."""

    def __init__(self) -> None:
        self.presence = PresenceRegistry()
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self._memberships: dict[WebSocket, set[str]] = defaultdict(set)
        self._owners: dict[WebSocket, int] = {}

    # -- membership ---------------------------------------------------------
    async def connect(self, user_id: int, ws: WebSocket) -> None:
        """Register an accepted socket and announce the user if newly online."""
        self._owners[ws] = user_id
        self.join(ws, user_room(user_id))
        first = self.presence.connect(user_id, ws)
        logger.info("User %d connected (%d online)", user_id, len(self.presence.online_users()))
        if first:
            await self.broadcast("user_online", user_id, exclude=ws)

    async def disconnect(self, ws: WebSocket) -> None:
        user_id = self._owners.pop(ws, None)
        for room in self._memberships.pop(ws, set()):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(ws)
                if not members:
                    del self._rooms[room]
        if user_id is None:
            return
        last = self.presence.disconnect(user_id, ws)
        logger.info("User %d disconnected", user_id)
        if last:
            await self.broadcast("user_offline", user_id)

    def join(self, ws: WebSocket, room: str) -> None:
        self._rooms[room].add(ws)
        self._memberships[ws].add(room)

    def user_of(self, ws: WebSocket) -> int | None:
        return self._owners.get(ws)

    # -- presence queries ---------------------------------------------------
    def is_online(self, user_id: int) -> bool:
        return self.presence.is_online(user_id)

    def online_users(self) -> list[int]:
        return self.presence.online_users()

    # -- fan-out ------------------------------------------------------------
    async def send(self, ws: WebSocket, event: str, data: Any) -> bool:
        """Send one frame.  A socket that fails is dropped, not retried."""
        try:
            await ws.send_json({"event": event, "data": data})
            return True
        except Exception:
            logger.exception("Dropping socket after failed %r send", event)
            await self.disconnect(ws)
            return False

    async def emit_to_room(self, room: str, event: str, data: Any) -> int:
        """Send *event* to every socket in *room*; returns how many got it."""
        delivered = 0
        for ws in list(self._rooms.get(room, ())):
            if await self.send(ws, event, data):
                delivered += 1
        return delivered

    async def emit_to_user(self, user_id: int, event: str, data: Any) -> int:
        return await self.emit_to_room(user_room(user_id), event, data)

    async def deliver_message(self, message: dict) -> None:
        """Push a stored message to both participants and ping the receiver."""
        sender_id = message["sender"]["_id"]
        receiver_id = message["receiver"]["_id"]
        await self.emit_to_user(receiver_id, "receiveMessage", message)
        await self.emit_to_user(sender_id, "receiveMessage", message)
        await self.emit_to_user(receiver_id, "playNotification", {"from": sender_id})

    async def broadcast(self, event: str, data: Any, exclude: WebSocket | None = None) -> None:
        for ws in list(self._owners):
            if ws is not exclude:
                await self.send(ws, event, data)


@lru_cache(maxsize=1)
def get_gateway() -> RealtimeGateway:
    return RealtimeGateway()
