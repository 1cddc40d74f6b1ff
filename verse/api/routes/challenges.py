"""
verse.api.routes.challenges — Challenge & poll endpoints
=========================================================

Challenges and polls share one router shape; :func:`build_router` is
mounted twice, at ``/api/challenges`` and ``/api/polls``, each bound to its
``kind``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from pydantic import BaseModel

from verse.api.deps import CurrentUser, get_config, get_engine
from verse.config import VerseConfig
from verse.database.engine import run_db
from verse.database.models import EntryKind
from verse.services import match_service
from verse.services.errors import ServiceError
from verse.services.upload_service import delete_upload, save_optional, save_upload

logger = logging.getLogger(__name__)


class VoteBody(BaseModel):
    option: str | None = None
    voteFor: str | None = None


def build_router(kind: EntryKind) -> APIRouter:
    router = APIRouter(prefix=f"/{kind.value}s", tags=[f"{kind.value}s"])

    @router.post("")
    async def create(
        response: Response,
        user_id: CurrentUser,
        category: str | None = Form(None),
        skill: str | None = Form(None),
        submission: UploadFile | None = File(None),
        engine: Any = Depends(get_engine),
        cfg: VerseConfig = Depends(get_config),
    ):
        """Join the oldest waiting entry in the category, or open a new one."""
        # Validate cheap fields before writing the upload to disk
        match_service.normalize_category(category or skill)
        media_url = await save_optional(submission)
        try:
            result = await run_db(
                match_service.create_entry,
                engine,
                cfg,
                kind=kind.value,
                user_id=user_id,
                category=category or skill,
                submission=media_url,
            )
        except Exception:
            if media_url:
                delete_upload(media_url)
            raise

        response.status_code = 200 if result.matched else 201
        return {
            "message": result.message,
            kind.value: result.entry,
            "attemptsLeft": result.attempts_left,
            "matched": result.matched,
        }

    @router.put("/{entry_id}/submission")
    async def submit(
        entry_id: int,
        user_id: CurrentUser,
        submission: UploadFile | None = File(None),
        engine: Any = Depends(get_engine),
    ):
        """The matched opponent uploads their side; voting opens."""
        if submission is None or not submission.filename:
            raise ServiceError("No file uploaded.")
        content = await submission.read()
        media_url = await save_upload(submission.filename, content, submission.content_type)
        try:
            return await run_db(
                match_service.submit_opponent_media,
                engine,
                kind=kind.value,
                entry_id=entry_id,
                user_id=user_id,
                media_url=media_url,
            )
        except Exception:
            delete_upload(media_url)
            raise

    @router.put("/{entry_id}/vote")
    def vote(
        entry_id: int,
        body: VoteBody,
        user_id: CurrentUser,
        engine: Any = Depends(get_engine),
        cfg: VerseConfig = Depends(get_config),
    ):
        return match_service.cast_vote(
            engine,
            cfg,
            kind=kind.value,
            entry_id=entry_id,
            voter_id=user_id,
            option=body.option or body.voteFor,
        )

    @router.put("/{entry_id}/finalize")
    def finalize(
        entry_id: int,
        user_id: CurrentUser,
        engine: Any = Depends(get_engine),
        cfg: VerseConfig = Depends(get_config),
    ):
        entry = match_service.finalize_entry(
            engine, cfg, kind=kind.value, entry_id=entry_id, viewer_id=user_id
        )
        return {"message": f"{kind.value.capitalize()} finalized.", kind.value: entry}

    @router.delete("/cancel")
    def cancel(
        user_id: CurrentUser,
        entry_id: int | None = Query(None, alias="id"),
        engine: Any = Depends(get_engine),
        cfg: VerseConfig = Depends(get_config),
    ):
        """Withdraw a still-unmatched entry; the fee is refunded."""
        cancelled = match_service.cancel_entry(
            engine, cfg, kind=kind.value, user_id=user_id, entry_id=entry_id
        )
        return {
            "message": f"{kind.value.capitalize()} cancelled. Fee refunded.",
            "id": cancelled,
        }

    @router.get("")
    def list_all(
        user_id: CurrentUser,
        engine: Any = Depends(get_engine),
        cfg: VerseConfig = Depends(get_config),
    ):
        return match_service.list_entries(engine, cfg, kind=kind.value, viewer_id=user_id)

    @router.get("/{entry_id}")
    def get_one(entry_id: int, user_id: CurrentUser, engine: Any = Depends(get_engine)):
        return match_service.get_entry(
            engine, kind=kind.value, entry_id=entry_id, viewer_id=user_id
        )

    return router


challenges_router = build_router(EntryKind.CHALLENGE)
polls_router = build_router(EntryKind.POLL)
