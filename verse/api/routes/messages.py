"""
verse.api.routes.messages — Direct messages over HTTP
======================================================

Every handler here is ``async`` because it pushes events through the
real-time gateway after the store call; the store call itself goes through
:func:`run_db`.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from verse.api.deps import CurrentUser, get_config, get_engine
from verse.config import VerseConfig
from verse.database.engine import run_db
from verse.realtime.gateway import RealtimeGateway, get_gateway
from verse.services import message_service
from verse.services.upload_service import delete_upload, save_optional

router = APIRouter(prefix="/messages", tags=["messages"])


async def _announce_read(gateway: RealtimeGateway, reader_id: int, partner_id: int) -> None:
    await gateway.emit_to_user(
        partner_id, "messages_read", {"by": reader_id, "from": partner_id}
    )


@router.post("", status_code=201)
async def send_message(
    user_id: CurrentUser,
    receiver: int | None = Form(None),
    text: str | None = Form(None),
    file: UploadFile | None = File(None),
    engine: Any = Depends(get_engine),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    media_url = await save_optional(file)
    try:
        message = await run_db(
            message_service.send_message,
            engine,
            sender_id=user_id,
            receiver_id=receiver,
            text=text,
            media_url=media_url,
        )
    except Exception:
        if media_url:
            delete_upload(media_url)
        raise

    await gateway.deliver_message(message)
    return message


@router.get("/conversation/{partner_id}")
async def conversation(
    partner_id: int,
    user_id: CurrentUser,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    engine: Any = Depends(get_engine),
    cfg: VerseConfig = Depends(get_config),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    """History oldest → newest; opening it marks the partner's messages read."""
    if limit is not None:
        limit = min(limit, cfg.conversation_max_limit)
    messages, marked = await run_db(
        message_service.get_conversation,
        engine,
        viewer_id=user_id,
        partner_id=partner_id,
        page=page,
        limit=limit,
    )
    if marked:
        await _announce_read(gateway, user_id, partner_id)
    return messages


@router.put("/conversation/{partner_id}/read")
async def mark_read(
    partner_id: int,
    user_id: CurrentUser,
    engine: Any = Depends(get_engine),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    marked = await run_db(
        message_service.mark_conversation_read,
        engine,
        reader_id=user_id,
        partner_id=partner_id,
    )
    if marked:
        await _announce_read(gateway, user_id, partner_id)
    return {"message": "Conversation marked as read.", "modifiedCount": marked}


@router.get("/threads")
async def threads(user_id: CurrentUser, engine: Any = Depends(get_engine)):
    return await run_db(message_service.list_threads, engine, user_id=user_id)
