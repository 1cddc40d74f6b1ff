"""Initial Verse schema

Revision ID: 4c2e9a7b1f30
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c2e9a7b1f30"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else sa.func.now(),
    )


def _user_fk(name: str, ondelete: str = "CASCADE", **kwargs) -> sa.Column:
    return sa.Column(
        name, sa.Integer(), sa.ForeignKey("users.id", ondelete=ondelete), **kwargs
    )


def upgrade() -> None:
    """Create users, social graph, messaging and challenge tables."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(50), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("google_id", sa.String(64), nullable=True, unique=True),
        sa.Column("profile_pic", sa.String(500), nullable=False, server_default=""),
        sa.Column("bio", sa.Text(), nullable=False, server_default=""),
        sa.Column("organization", sa.String(200), nullable=False, server_default=""),
        sa.Column("skills", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("verse_points", sa.Integer(), nullable=False, server_default="50"),
        sa.Column(
            "vote_points_earned_today", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_vote_date", sa.Date(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "follows",
        _user_fk("follower_id", primary_key=True),
        _user_fk("followed_id", primary_key=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_follows_followed", "follows", ["followed_id"])

    op.create_table(
        "posts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _user_fk("author_id", nullable=False),
        sa.Column("text", sa.String(500), nullable=False, server_default=""),
        sa.Column("media_url", sa.String(500), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_posts_author_created", "posts", ["author_id", "created_at"])

    op.create_table(
        "post_likes",
        sa.Column(
            "post_id",
            sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        _user_fk("user_id", primary_key=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "post_replies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "post_id",
            sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _user_fk("user_id", nullable=False),
        sa.Column("text", sa.String(500), nullable=False),
        _timestamp("created_at"),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _user_fk("sender_id", nullable=False),
        _user_fk("receiver_id", nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("media_url", sa.String(500), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_messages_conversation",
        "messages",
        ["sender_id", "receiver_id", "created_at"],
    )
    op.create_index("ix_messages_unread", "messages", ["receiver_id", "read"])

    op.create_table(
        "challenges",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("category", sa.String(100), nullable=False),
        _user_fk("challenger_id", nullable=False),
        _user_fk("opponent_id", ondelete="SET NULL", nullable=True),
        sa.Column("challenger_media", sa.String(500), nullable=False, server_default=""),
        sa.Column("opponent_media", sa.String(500), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("finalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        _user_fk("winner_id", ondelete="SET NULL", nullable=True),
        _timestamp("matched_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_challenges_matching",
        "challenges",
        ["kind", "category", "status", "created_at"],
    )
    op.create_index(
        "ix_challenges_challenger_created", "challenges", ["challenger_id", "created_at"]
    )
    op.create_index(
        "ix_challenges_opponent_matched", "challenges", ["opponent_id", "matched_at"]
    )

    op.create_table(
        "challenge_votes",
        sa.Column(
            "challenge_id",
            sa.Integer(),
            sa.ForeignKey("challenges.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        _user_fk("voter_id", primary_key=True),
        sa.Column("side", sa.String(20), nullable=False),
        _timestamp("created_at"),
    )

    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(128), primary_key=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_oauth_states_created_at", "oauth_states", ["created_at"])


def downgrade() -> None:
    """Drop every Verse table."""
    op.drop_index("ix_oauth_states_created_at", table_name="oauth_states")
    op.drop_table("oauth_states")
    op.drop_table("challenge_votes")
    op.drop_index("ix_challenges_opponent_matched", table_name="challenges")
    op.drop_index("ix_challenges_challenger_created", table_name="challenges")
    op.drop_index("ix_challenges_matching", table_name="challenges")
    op.drop_table("challenges")
    op.drop_index("ix_messages_unread", table_name="messages")
    op.drop_index("ix_messages_conversation", table_name="messages")
    op.drop_table("messages")
    op.drop_table("post_replies")
    op.drop_table("post_likes")
    op.drop_index("ix_posts_author_created", table_name="posts")
    op.drop_table("posts")
    op.drop_index("ix_follows_followed", table_name="follows")
    op.drop_table("follows")
    op.drop_table("users")
