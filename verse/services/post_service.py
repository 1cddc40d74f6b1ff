"""
verse.services.post_service — Posts, likes, replies & feed assembly
====================================================================
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from verse.database.engine import get_session
from verse.database.models import Follow, Post, PostLike, PostReply, User
from verse.serializers import post_dict
from verse.services.errors import NotFoundError, ServiceError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 500


def create_post(
    engine: Engine,
    *,
    author_id: int,
    text: str | None,
    media_url: str | None = None,
) -> dict:
    """Persist a post for *author_id*.  Text, media or both are required."""
    text = (text or "").strip()
    if not text and not media_url:
        raise ServiceError("A post needs text or media.")
    if len(text) > MAX_TEXT_LENGTH:
        raise ServiceError(f"Post text is limited to {MAX_TEXT_LENGTH} characters.")

    with get_session(engine) as session:
        author = session.get(User, author_id)
        if author is None:
            raise NotFoundError("User not found.")
        post = Post(author_id=author_id, text=text, media_url=media_url)
        session.add(post)
        session.flush()
        logger.debug("User %d created post %d", author_id, post.id)
        return post_dict(session, post)


def get_feed(engine: Engine, *, viewer_id: int, page: int, limit: int) -> list[dict]:
    """Newest-first page of posts, followed authors (and the viewer) first.

    When the followed supply runs out before *limit* is reached, the rest of
    the page is backfilled from everyone else, also newest first.  Paging is
    continuous across both groups: page *n* of the backfill starts where the
    followed posts ended.
    """
    skip = (page - 1) * limit

    with get_session(engine) as session:
        followed = select(Follow.followed_id).where(Follow.follower_id == viewer_id)
        in_circle = Post.author_id.in_(followed) | (Post.author_id == viewer_id)

        circle_total = session.scalar(
            select(func.count()).select_from(Post).where(in_circle)
        ) or 0

        base = select(Post).options(
            selectinload(Post.author), selectinload(Post.replies)
        )
        posts = list(
            session.scalars(
                base.where(in_circle)
                .order_by(Post.created_at.desc(), Post.id.desc())
                .offset(skip)
                .limit(limit)
            ).all()
        )

        if len(posts) < limit:
            backfill = session.scalars(
                base.where(~in_circle)
                .order_by(Post.created_at.desc(), Post.id.desc())
                .offset(max(0, skip - circle_total))
                .limit(limit - len(posts))
            ).all()
            posts.extend(backfill)

        return [post_dict(session, p) for p in posts]


def toggle_like(engine: Engine, *, post_id: int, user_id: int) -> dict:
    """Like the post if the user hasn't yet, otherwise remove the like."""
    with get_session(engine) as session:
        if session.get(Post, post_id) is None:
            raise NotFoundError("Post not found.")

        removed = session.execute(
            delete(PostLike).where(
                PostLike.post_id == post_id, PostLike.user_id == user_id
            )
        ).rowcount

        if not removed:
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(PostLike(post_id=post_id, user_id=user_id))
                    session.flush()
            except IntegrityError:
                # Double-click raced us to the insert; already liked
                pass

        likes = list(
            session.scalars(
                select(PostLike.user_id)
                .where(PostLike.post_id == post_id)
                .order_by(PostLike.created_at)
            ).all()
        )
        liked = user_id in likes
        return {
            "message": "Post liked." if liked else "Post unliked.",
            "likes": likes,
            "liked": liked,
        }


def add_reply(engine: Engine, *, post_id: int, user_id: int, text: str | None) -> dict:
    text = (text or "").strip()
    if not text:
        raise ServiceError("Reply text is required.")
    if len(text) > MAX_TEXT_LENGTH:
        raise ServiceError(f"Reply text is limited to {MAX_TEXT_LENGTH} characters.")

    with get_session(engine) as session:
        post = session.get(Post, post_id)
        if post is None:
            raise NotFoundError("Post not found.")
        session.add(PostReply(post_id=post_id, user_id=user_id, text=text))
        session.flush()
        session.refresh(post)
        return post_dict(session, post)
