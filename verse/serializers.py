"""
verse.serializers — ORM row → JSON-ready dict
==============================================

Key names follow the contract the web client already speaks
(``_id``, ``profilePic``, ``versePoints``, ``postedBy``, …).  Everything here
runs inside an open session; callers hand the resulting dicts across the
thread boundary, never ORM instances.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from verse.database.models import (
    Challenge,
    Follow,
    Message,
    Post,
    PostLike,
    User,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def user_ref(u: User | None) -> dict | None:
    """The short form embedded in posts, messages and entries."""
    if u is None:
        return None
    return {"_id": u.id, "username": u.username, "profilePic": u.profile_pic}


def user_public(u: User) -> dict:
    return {
        "_id": u.id,
        "username": u.username,
        "email": u.email,
        "profilePic": u.profile_pic,
        "bio": u.bio,
        "organization": u.organization,
        "skills": list(u.skills or []),
        "versePoints": u.verse_points,
        "createdAt": _iso(u.created_at),
    }


def user_profile(session: Session, u: User) -> dict:
    """Full profile: public fields plus followers, following and posts."""
    followers = session.scalars(
        select(User)
        .join(Follow, Follow.follower_id == User.id)
        .where(Follow.followed_id == u.id)
        .order_by(User.username)
    ).all()
    following = session.scalars(
        select(User)
        .join(Follow, Follow.followed_id == User.id)
        .where(Follow.follower_id == u.id)
        .order_by(User.username)
    ).all()
    return {
        **user_public(u),
        "followers": [user_ref(f) for f in followers],
        "following": [user_ref(f) for f in following],
        "posts": [
            {"_id": p.id, "text": p.text, "img": p.media_url} for p in u.posts
        ],
    }


def post_dict(session: Session, post: Post) -> dict:
    likes = session.scalars(
        select(PostLike.user_id)
        .where(PostLike.post_id == post.id)
        .order_by(PostLike.created_at)
    ).all()
    return {
        "_id": post.id,
        "postedBy": user_ref(post.author),
        "text": post.text,
        "img": post.media_url,
        "likes": list(likes),
        "replies": [
            {
                "_id": r.id,
                "userId": r.user_id,
                "username": r.user.username,
                "userProfilePic": r.user.profile_pic,
                "text": r.text,
                "createdAt": _iso(r.created_at),
            }
            for r in post.replies
        ],
        "createdAt": _iso(post.created_at),
    }


def message_dict(msg: Message) -> dict:
    return {
        "_id": msg.id,
        "sender": user_ref(msg.sender),
        "receiver": user_ref(msg.receiver),
        "text": msg.text,
        "file": msg.media_url,
        "read": msg.read,
        "createdAt": _iso(msg.created_at),
        "updatedAt": _iso(msg.updated_at),
    }


def challenge_dict(entry: Challenge, viewer_id: int | None = None) -> dict:
    votes = [{"voter": v.voter_id, "option": v.side} for v in entry.votes]
    challenger_votes = sum(1 for v in entry.votes if v.side == "challenger")
    data = {
        "_id": entry.id,
        "kind": entry.kind,
        "category": entry.category,
        "challenger": user_ref(entry.challenger),
        "opponent": user_ref(entry.opponent),
        "challengerSubmission": entry.challenger_media,
        "opponentSubmission": entry.opponent_media,
        "status": entry.status,
        "finalized": entry.finalized,
        "winner": entry.winner_id,
        "votes": votes,
        "votesChallenger": challenger_votes,
        "votesOpponent": len(votes) - challenger_votes,
        "createdAt": _iso(entry.created_at),
        "updatedAt": _iso(entry.updated_at),
    }
    if viewer_id is not None:
        data["hasVoted"] = any(v.voter_id == viewer_id for v in entry.votes)
    return data
