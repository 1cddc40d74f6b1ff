"""
verse.api.ws — ``/ws`` real-time endpoint
==========================================

Authenticates the handshake, registers the socket with the gateway and
dispatches client events.  The handshake token may arrive as ``?token=``,
an ``Authorization: Bearer`` header, or the ``jwt`` cookie; without a valid
one for an existing user the socket is closed with 1008 before it is
accepted.  Text and binary frames both carry UTF-8 JSON.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from verse.api.deps import (
    AUTH_COOKIE,
    decode_token,
    extract_token,
    get_engine,
    user_exists,
)
from verse.database.engine import run_db
from verse.realtime.gateway import RealtimeGateway, get_gateway, user_room
from verse.services import message_service
from verse.services.errors import ServiceError

logger = logging.getLogger(__name__)
router = APIRouter()


def _as_user_id(value: Any) -> int:
    if isinstance(value, dict):
        value = value.get("to") or value.get("userId") or value.get("id")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ServiceError("A valid user id is required.") from None


async def _dispatch(
    gateway: RealtimeGateway,
    engine: Engine,
    ws: WebSocket,
    user_id: int,
    event: str,
    data: Any,
) -> None:
    if event == "joinRoom":
        if data in (None, ""):
            raise ServiceError("Room id is required.")
        gateway.join(ws, str(data))

    elif event == "getOnlineUsers":
        await gateway.send(ws, "onlineUsers", gateway.online_users())

    elif event == "sendMessage":
        if not isinstance(data, dict):
            raise ServiceError("Message payload must be an object.")
        receiver_id = _as_user_id(data.get("receiver"))
        message = await run_db(
            message_service.send_message,
            engine,
            sender_id=user_id,
            receiver_id=receiver_id,
            text=data.get("text"),
            media_url=data.get("file"),
        )
        await gateway.deliver_message(message)

    elif event in ("typing", "stopTyping"):
        target = _as_user_id(data)
        await gateway.emit_to_room(user_room(target), event, {"from": user_id})

    elif event == "markConversationRead":
        partner_id = _as_user_id(data)
        marked = await run_db(
            message_service.mark_conversation_read,
            engine,
            reader_id=user_id,
            partner_id=partner_id,
        )
        if marked:
            await gateway.emit_to_user(partner_id, "messages_read", {"by": user_id, "from": partner_id})

    else:
        raise ServiceError(f"Unknown event: {event!r}")


@router.websocket("/ws")
async def realtime(
    ws: WebSocket,
    engine: Engine = Depends(get_engine),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    token = ws.query_params.get("token") or extract_token(
        ws.headers.get("authorization"), ws.cookies.get(AUTH_COOKIE)
    )
    try:
        if not token:
            raise InvalidTokenError("No token")
        user_id = decode_token(token)
    except InvalidTokenError:
        logger.debug("Rejected WebSocket handshake without a valid token")
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if not await run_db(user_exists, engine, user_id):
        logger.debug("Rejected WebSocket handshake for unknown user %d", user_id)
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await ws.accept()
    await gateway.connect(user_id, ws)
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            try:
                raw = message.get("text")
                if raw is None:
                    raw = (message.get("bytes") or b"").decode("utf-8")
                frame = json.loads(raw)
                if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                    raise ValueError("Frames must be objects with an 'event' string.")
            except ValueError as exc:
                await gateway.send(ws, "error", {"message": f"Malformed frame: {exc}"})
                continue

            try:
                await _dispatch(gateway, engine, ws, user_id, frame["event"], frame.get("data"))
            except ServiceError as exc:
                await gateway.send(ws, "error", {"message": exc.message, "event": frame["event"]})
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.disconnect(ws)
