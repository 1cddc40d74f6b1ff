"""
verse.services.user_service — Accounts, profiles & the follow graph
====================================================================

Shared service module behind ``/api/users`` and the OAuth callback.
Passwords are stored as bcrypt hashes (passlib); the follow relationship is
one ``follows`` row per edge, so a toggle is a single conditional write.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from passlib.hash import bcrypt
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError

from verse.database.engine import get_session
from verse.database.models import Follow, User
from verse.serializers import user_profile, user_public
from verse.services.errors import ForbiddenError, NotFoundError, ServiceError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from verse.config import VerseConfig

logger = logging.getLogger(__name__)


def _normalize_skills(skills: list) -> list[str]:
    return [str(s).strip().lower() for s in skills if str(s).strip()]


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
def create_user(
    engine: Engine,
    cfg: VerseConfig,
    *,
    username: str,
    email: str,
    password: str,
) -> dict:
    """Register a new account and return its public fields."""
    username = (username or "").strip()
    email = (email or "").strip().lower()
    if not username or not email or not password:
        raise ServiceError("Username, email, and password are required.")

    with get_session(engine) as session:
        clash = session.scalar(
            select(User).where(or_(User.email == email, User.username == username))
        )
        if clash is not None:
            if clash.email == email:
                raise ServiceError("User with this email already exists.")
            raise ServiceError("Username is already taken.")

        user = User(
            username=username,
            email=email,
            password_hash=bcrypt.hash(password),
            verse_points=cfg.starting_points,
        )
        session.add(user)
        try:
            session.flush()
        except IntegrityError:
            # Lost a race against a concurrent signup with the same identity
            raise ServiceError("User with this email or username already exists.") from None

        logger.info("User %d (%s) signed up", user.id, user.username)
        return user_public(user)


def authenticate(engine: Engine, *, email: str, password: str) -> dict:
    """Return the user's public fields when *password* matches, else 401."""
    email = (email or "").strip().lower()
    if not email or not password:
        raise ServiceError("Email and password are required.")

    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.email == email))
        if user is None or not user.password_hash or not bcrypt.verify(
            password, user.password_hash
        ):
            raise ServiceError("Invalid email or password.", status_code=401)
        return user_public(user)


def _free_username(session, base: str, google_id: str) -> str:
    """First of *base*, *base*-<id tail>, *base*-<id tail>-2, ... not yet taken."""
    candidate = base
    suffix = f"{base}-{google_id[-6:]}"
    n = 1
    while session.scalar(select(User.id).where(User.username == candidate)) is not None:
        candidate = suffix if n == 1 else f"{suffix}-{n}"
        n += 1
    return candidate


def upsert_google_user(
    engine: Engine,
    cfg: VerseConfig,
    *,
    google_id: str,
    name: str,
    email: str,
    picture: str | None,
) -> dict:
    """Find the account linked to *google_id*, linking or creating one."""
    email = email.strip().lower()
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.google_id == google_id))
        if user is None:
            user = session.scalar(select(User).where(User.email == email))
            if user is not None:
                user.google_id = google_id
            else:
                username = _free_username(
                    session, name.strip() or email.split("@", 1)[0], google_id
                )
                user = User(
                    username=username,
                    email=email,
                    google_id=google_id,
                    profile_pic=picture or "",
                    verse_points=cfg.starting_points,
                )
                session.add(user)
            session.flush()
            logger.info("Google account %s linked to user %d", google_id, user.id)
        return user_public(user)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------
def get_profile(engine: Engine, user_id: int) -> dict:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user_profile(session, user)


def list_users(engine: Engine) -> list[dict]:
    with get_session(engine) as session:
        users = session.scalars(select(User).order_by(User.id)).all()
        return [user_public(u) for u in users]


def update_profile(
    engine: Engine,
    *,
    user_id: int,
    actor_id: int,
    profile_pic: str | None = None,
    bio: str | None = None,
    organization: str | None = None,
    skills_json: str | None = None,
) -> dict:
    """Apply the supplied profile fields.  Only the owner may edit.

    *skills_json* is the JSON-encoded array the client posts in multipart
    forms, e.g. ``'["Photography", "go"]'``.
    """
    if user_id != actor_id:
        raise ForbiddenError("Unauthorized.")

    skills: list[str] | None = None
    if skills_json is not None:
        try:
            parsed = json.loads(skills_json)
        except json.JSONDecodeError:
            raise ServiceError("skills must be a JSON array of strings.") from None
        if not isinstance(parsed, list):
            raise ServiceError("skills must be a JSON array of strings.")
        skills = _normalize_skills(parsed)

    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if profile_pic is not None:
            user.profile_pic = profile_pic
        if bio is not None:
            user.bio = bio
        if organization is not None:
            user.organization = organization
        if skills is not None:
            user.skills = skills
        session.flush()
        return user_profile(session, user)


# ---------------------------------------------------------------------------
# Follow graph
# ---------------------------------------------------------------------------
def toggle_follow(engine: Engine, *, follower_id: int, target_id: int) -> dict:
    """Follow *target_id* if not yet following, otherwise unfollow.

    Returns ``{"message", "following"}`` where ``following`` is the state
    after the call.
    """
    if follower_id == target_id:
        raise ServiceError("You cannot follow yourself.")

    with get_session(engine) as session:
        if session.get(User, target_id) is None:
            raise NotFoundError("User not found.")

        removed = session.execute(
            delete(Follow).where(
                Follow.follower_id == follower_id,
                Follow.followed_id == target_id,
            )
        ).rowcount
        if removed:
            logger.debug("User %d unfollowed %d", follower_id, target_id)
            return {"message": "Unfollowed successfully.", "following": False}

        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(Follow(follower_id=follower_id, followed_id=target_id))
                session.flush()
        except IntegrityError:
            # A concurrent request created the same edge; the end state is "following"
            pass
        logger.debug("User %d followed %d", follower_id, target_id)
        return {"message": "Followed successfully.", "following": True}

