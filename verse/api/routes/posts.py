"""
verse.api.routes.posts — Posts, feed, likes & replies
======================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel

from verse.api.deps import CurrentUser, get_config, get_engine
from verse.config import VerseConfig
from verse.database.engine import run_db
from verse.services import post_service
from verse.services.upload_service import delete_upload, save_optional

router = APIRouter(prefix="/posts", tags=["posts"])


class ReplyBody(BaseModel):
    text: str = ""


@router.post("", status_code=201)
async def create_post(
    user_id: CurrentUser,
    text: str | None = Form(None),
    media: UploadFile | None = File(None),
    engine: Any = Depends(get_engine),
):
    media_url = await save_optional(media)
    try:
        return await run_db(
            post_service.create_post,
            engine,
            author_id=user_id,
            text=text,
            media_url=media_url,
        )
    except Exception:
        if media_url:
            delete_upload(media_url)
        raise


@router.get("/feed")
def feed(
    user_id: CurrentUser,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    engine: Any = Depends(get_engine),
    cfg: VerseConfig = Depends(get_config),
):
    """Newest posts from followed users first, then everyone else."""
    limit = min(limit or cfg.feed_default_limit, cfg.feed_max_limit)
    return post_service.get_feed(engine, viewer_id=user_id, page=page, limit=limit)


@router.put("/like/{post_id}")
def like(post_id: int, user_id: CurrentUser, engine: Any = Depends(get_engine)):
    return post_service.toggle_like(engine, post_id=post_id, user_id=user_id)


@router.post("/{post_id}/reply", status_code=201)
def reply(
    post_id: int,
    body: ReplyBody,
    user_id: CurrentUser,
    engine: Any = Depends(get_engine),
):
    return post_service.add_reply(engine, post_id=post_id, user_id=user_id, text=body.text)
