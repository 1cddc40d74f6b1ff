"""
verse.api.routes.users — Accounts, profiles & follows
======================================================
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile
from pydantic import BaseModel

from verse.api.deps import (
    AUTH_COOKIE,
    CurrentUser,
    create_access_token,
    get_config,
    get_engine,
)
from verse.config import VerseConfig
from verse.database.engine import run_db
from verse.services import user_service
from verse.services.errors import ForbiddenError
from verse.services.upload_service import delete_upload, save_optional

router = APIRouter(prefix="/users", tags=["users"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SignupBody(BaseModel):
    username: str = ""
    email: str = ""
    password: str = ""


class LoginBody(BaseModel):
    email: str = ""
    password: str = ""


def _issue(response: Response, user: dict, cfg: VerseConfig) -> dict:
    token = create_access_token(user["_id"], cfg.token_ttl_days)
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=cfg.token_ttl_days * 24 * 3600,
        httponly=True,
        samesite="lax",
    )
    return {"token": token, "user": user}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
@router.post("/signup", status_code=201)
def signup(
    body: SignupBody,
    response: Response,
    engine: Any = Depends(get_engine),
    cfg: VerseConfig = Depends(get_config),
):
    user = user_service.create_user(
        engine, cfg, username=body.username, email=body.email, password=body.password
    )
    return _issue(response, user, cfg)


@router.post("/login")
def login(
    body: LoginBody,
    response: Response,
    engine: Any = Depends(get_engine),
    cfg: VerseConfig = Depends(get_config),
):
    user = user_service.authenticate(engine, email=body.email, password=body.password)
    logger.debug("User %d logged in", user["_id"])
    return _issue(response, user, cfg)


@router.post("/logout")
def logout(response: Response):
    """Tokens are stateless; logging out just drops the cookie."""
    response.delete_cookie(AUTH_COOKIE)
    return {"message": "Logged out successfully."}


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------
@router.get("/me")
def me(user_id: CurrentUser, engine: Any = Depends(get_engine)):
    return user_service.get_profile(engine, user_id)


@router.get("")
def list_users(user_id: CurrentUser, engine: Any = Depends(get_engine)):
    return user_service.list_users(engine)


@router.get("/{target_id}")
def get_user(target_id: int, user_id: CurrentUser, engine: Any = Depends(get_engine)):
    return user_service.get_profile(engine, target_id)


@router.put("/{target_id}/update-profile")
async def update_profile(
    target_id: int,
    user_id: CurrentUser,
    profilePic: UploadFile | None = File(None),
    bio: str | None = Form(None),
    organization: str | None = Form(None),
    skills: str | None = Form(None),
    engine: Any = Depends(get_engine),
):
    """Owner-only multipart profile edit.  ``skills`` is a JSON array string."""
    if target_id != user_id:
        raise ForbiddenError("Unauthorized.")

    previous = None
    picture_url = await save_optional(profilePic)
    try:
        if picture_url is not None:
            previous = (await run_db(user_service.get_profile, engine, user_id))["profilePic"]
        profile = await run_db(
            user_service.update_profile,
            engine,
            user_id=target_id,
            actor_id=user_id,
            profile_pic=picture_url,
            bio=bio,
            organization=organization,
            skills_json=skills,
        )
    except Exception:
        if picture_url:
            delete_upload(picture_url)
        raise
    if previous:
        delete_upload(previous)
    return profile


@router.put("/{target_id}/follow")
def follow(target_id: int, user_id: CurrentUser, engine: Any = Depends(get_engine)):
    return user_service.toggle_follow(engine, follower_id=user_id, target_id=target_id)
