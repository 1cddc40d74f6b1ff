"""
verse.services.message_service — Direct messages & read receipts
=================================================================

Pure store logic.  Pushing ``receiveMessage`` / ``messages_read`` events is
the caller's job (HTTP routes and the WebSocket gateway both call in here
and then emit through :mod:`verse.realtime.gateway`).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import selectinload

from verse.database.engine import get_session
from verse.database.models import Message, User, utcnow
from verse.serializers import message_dict, user_ref
from verse.services.errors import NotFoundError, ServiceError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 25


def send_message(
    engine: Engine,
    *,
    sender_id: int,
    receiver_id: int | None,
    text: str | None,
    media_url: str | None = None,
) -> dict:
    """Persist a message and return it serialized (sender/receiver embedded)."""
    if receiver_id is None:
        raise ServiceError("Receiver is required.")
    text = (text or "").strip() or None
    if text is None and not media_url:
        raise ServiceError("A message needs text or a file.")

    with get_session(engine) as session:
        if session.get(User, receiver_id) is None:
            raise NotFoundError("Receiver not found.")
        msg = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            media_url=media_url,
            read=False,
        )
        session.add(msg)
        session.flush()
        logger.debug("Message %d: %d -> %d", msg.id, sender_id, receiver_id)
        return message_dict(msg)


def mark_conversation_read(engine: Engine, *, reader_id: int, partner_id: int) -> int:
    """Mark every unread message from *partner_id* to *reader_id* as read.

    Returns the number of rows changed; a second call returns 0.
    """
    with get_session(engine) as session:
        return _mark_read(session, reader_id=reader_id, partner_id=partner_id)


def _mark_read(session, *, reader_id: int, partner_id: int) -> int:
    result = session.execute(
        update(Message)
        .where(
            Message.sender_id == partner_id,
            Message.receiver_id == reader_id,
            Message.read.is_(False),
        )
        .values(read=True, updated_at=utcnow())
    )
    return result.rowcount or 0


def get_conversation(
    engine: Engine,
    *,
    viewer_id: int,
    partner_id: int,
    page: int | None = None,
    limit: int | None = None,
) -> tuple[list[dict], int]:
    """Messages between the two users, oldest first, plus how many were
    newly marked read.

    With *limit*, page 1 is the most recent *limit* messages, page 2 the
    ones before that, and so on — each page still ordered oldest first.
    """
    between = or_(
        and_(Message.sender_id == viewer_id, Message.receiver_id == partner_id),
        and_(Message.sender_id == partner_id, Message.receiver_id == viewer_id),
    )
    query = select(Message).where(between).options(
        selectinload(Message.sender), selectinload(Message.receiver)
    )

    with get_session(engine) as session:
        if limit:
            skip = ((page or 1) - 1) * limit
            rows = session.scalars(
                query.order_by(Message.created_at.desc(), Message.id.desc())
                .offset(skip)
                .limit(limit)
            ).all()
            messages = list(reversed(rows))
        else:
            messages = list(
                session.scalars(
                    query.order_by(Message.created_at.asc(), Message.id.asc())
                ).all()
            )

        serialized = [message_dict(m) for m in messages]
        marked = _mark_read(session, reader_id=viewer_id, partner_id=partner_id)
        return serialized, marked


def list_threads(engine: Engine, *, user_id: int) -> list[dict]:
    """One entry per conversation partner: latest message preview, unread
    count and last activity.  Unread threads first, then most recent."""
    with get_session(engine) as session:
        messages = session.scalars(
            select(Message)
            .where(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
            .options(selectinload(Message.sender), selectinload(Message.receiver))
            .order_by(Message.created_at.desc(), Message.id.desc())
        ).all()

        unread_rows = session.execute(
            select(Message.sender_id, func.count())
            .where(Message.receiver_id == user_id, Message.read.is_(False))
            .group_by(Message.sender_id)
        ).all()
        unread = {sender: count for sender, count in unread_rows}

        threads: dict[int, dict] = {}
        for msg in messages:
            partner = msg.receiver if msg.sender_id == user_id else msg.sender
            if partner.id in threads:
                continue
            preview = msg.text or "(attachment)"
            if len(preview) > PREVIEW_LENGTH:
                preview = preview[:PREVIEW_LENGTH] + "..."
            threads[partner.id] = {
                **user_ref(partner),
                "lastMessage": preview,
                "updatedAt": msg.created_at,
                "unreadCount": unread.get(partner.id, 0),
            }

    # Newest first already; a stable sort on "has unread" keeps that order
    ordered = sorted(threads.values(), key=lambda t: t["unreadCount"] == 0)
    for thread in ordered:
        thread["updatedAt"] = thread["updatedAt"].isoformat()
    return ordered
