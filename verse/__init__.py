"""
Verse — Social Feed, Skill Challenges & Direct Messaging
=========================================================
Users post to a feed, follow each other, chat in real time, and stake
versePoints on head-to-head challenges and polls that the community votes
on.

Package layout::

    verse/
    ├── config.py          # YAML → typed economy config
    ├── serializers.py     # ORM rows → client JSON shapes
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, session helper, async bridge
    │   └── models.py      # All ORM models
    ├── services/
    │   ├── user_service.py     # Accounts, profiles, follow graph
    │   ├── post_service.py     # Posts, likes, replies, feed
    │   ├── message_service.py  # Direct messages, read receipts, threads
    │   ├── match_service.py    # Challenge/poll matchmaking & scoring
    │   ├── upload_service.py   # Media uploads
    │   └── errors.py           # ServiceError hierarchy
    ├── realtime/
    │   ├── presence.py    # Online-user registry
    │   └── gateway.py     # Rooms + event fan-out
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT + dependency injection
        ├── auth.py        # Google OAuth2 → JWT
        ├── ws.py          # /ws endpoint
        └── routes/        # REST endpoints
"""

__version__ = "0.1.0"
