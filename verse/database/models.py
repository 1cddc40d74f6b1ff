"""
verse.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- users            — Accounts, profile fields, versePoints balance
- follows          — Follow graph (one row = one follower → followed edge)
- posts            — Feed posts
- post_likes       — Like set per post
- post_replies     — Reply list per post
- messages         — Direct messages with read flag
- challenges       — Challenge/poll entries (``kind`` discriminant)
- challenge_votes  — One vote per voter per entry
- oauth_states     — One-time OAuth ``state`` tokens
"""

from __future__ import annotations

import enum
from datetime import UTC, date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Timezone-aware ``now`` used for every timestamp column default."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Verse ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EntryKind(enum.StrEnum):
    """The two flavours of head-to-head entry exposed by the API."""
    CHALLENGE = "challenge"
    POLL = "poll"


class EntryStatus(enum.StrEnum):
    """Lifecycle of an entry.  Only ever moves forward."""
    PENDING = "pending"   # waiting for an opponent
    OPEN = "open"         # matched, opponent submission missing
    CLOSED = "closed"     # both submissions present, voting allowed


class VoteSide(enum.StrEnum):
    CHALLENGER = "challenger"
    OPPONENT = "opponent"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(255), default=None)
    google_id: Mapped[str | None] = mapped_column(String(64), unique=True, default=None)
    profile_pic: Mapped[str] = mapped_column(String(500), default="")
    bio: Mapped[str] = mapped_column(Text, default="")
    organization: Mapped[str] = mapped_column(String(200), default="")
    skills: Mapped[list] = mapped_column(JSON, default=list)
    verse_points: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    vote_points_earned_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_vote_date: Mapped[date | None] = mapped_column(Date, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    posts: Mapped[list[Post]] = relationship(
        back_populates="author", order_by="Post.created_at.desc()"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r} points={self.verse_points}>"


# ---------------------------------------------------------------------------
# Follows — a row is both the follower's "following" edge and the
# followed user's "followers" edge
# ---------------------------------------------------------------------------
class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    followed_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_follows_followed", "followed_id"),
    )


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
class Post(Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(String(500), default="")
    media_url: Mapped[str | None] = mapped_column(String(500), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    author: Mapped[User] = relationship(back_populates="posts")
    replies: Mapped[list[PostReply]] = relationship(
        back_populates="post",
        cascade="all, delete-orphan",
        order_by="PostReply.created_at",
    )

    __table_args__ = (
        Index("ix_posts_author_created", "author_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Post id={self.id} author={self.author_id}>"


class PostLike(Base):
    __tablename__ = "post_likes"

    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class PostReply(Base):
    __tablename__ = "post_replies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    post: Mapped[Post] = relationship(back_populates="replies")
    user: Mapped[User] = relationship()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    receiver_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str | None] = mapped_column(Text, default=None)
    media_url: Mapped[str | None] = mapped_column(String(500), default=None)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    receiver: Mapped[User] = relationship(foreign_keys=[receiver_id])

    __table_args__ = (
        Index("ix_messages_conversation", "sender_id", "receiver_id", "created_at"),
        Index("ix_messages_unread", "receiver_id", "read"),
    )

    def __repr__(self) -> str:
        return f"<Message id={self.id} {self.sender_id}->{self.receiver_id} read={self.read}>"


# ---------------------------------------------------------------------------
# Challenges / polls — one table, ``kind`` tells them apart
# ---------------------------------------------------------------------------
class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    challenger_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    opponent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    challenger_media: Mapped[str] = mapped_column(String(500), default="")
    opponent_media: Mapped[str] = mapped_column(String(500), default="")
    status: Mapped[str] = mapped_column(
        String(20), default=EntryStatus.PENDING.value, nullable=False
    )
    finalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    winner_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), default=None
    )
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    challenger: Mapped[User] = relationship(foreign_keys=[challenger_id])
    opponent: Mapped[User | None] = relationship(foreign_keys=[opponent_id])
    votes: Mapped[list[ChallengeVote]] = relationship(
        back_populates="challenge",
        cascade="all, delete-orphan",
        order_by="ChallengeVote.created_at",
    )

    __table_args__ = (
        Index("ix_challenges_matching", "kind", "category", "status", "created_at"),
        Index("ix_challenges_challenger_created", "challenger_id", "created_at"),
        Index("ix_challenges_opponent_matched", "opponent_id", "matched_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Challenge id={self.id} kind={self.kind} category={self.category!r} "
            f"status={self.status} finalized={self.finalized}>"
        )


class ChallengeVote(Base):
    __tablename__ = "challenge_votes"

    challenge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("challenges.id", ondelete="CASCADE"), primary_key=True
    )
    voter_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    side: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    challenge: Mapped[Challenge] = relationship(back_populates="votes")


# ---------------------------------------------------------------------------
# OAuthState — one-time ``state`` values for the Google login round trip
# ---------------------------------------------------------------------------
class OAuthState(Base):
    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_oauth_states_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<OAuthState state={self.state[:8]}…>"
