"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os
import tempfile

# ---------------------------------------------------------------------------
# Environment must be in place before any import of verse.api.deps (which
# validates JWT_SECRET at module-load time) or verse.services.upload_service
# (which resolves the upload directory at import).
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("VERSE_UPLOAD_DIR", tempfile.mkdtemp(prefix="verse-uploads-"))

import pytest  # noqa: E402
from sqlalchemy import Engine  # noqa: E402

from verse.api.deps import create_access_token, get_engine  # noqa: E402
from verse.config import VerseConfig  # noqa: E402
from verse.database.engine import get_session, init_db  # noqa: E402
from verse.database.models import Base, User  # noqa: E402
from verse.realtime.gateway import get_gateway  # noqa: E402


@pytest.fixture
def db_engine() -> Engine:
    """A fresh in-memory SQLite database with all Verse tables.

    Goes through the app's own ``get_engine`` so route handlers and tests
    share one engine (StaticPool: every ``run_db`` thread sees the same
    in-memory database).
    """
    get_engine.cache_clear()
    engine = get_engine()
    init_db(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()
    get_engine.cache_clear()


@pytest.fixture
def cfg() -> VerseConfig:
    return VerseConfig()


@pytest.fixture
def make_user(db_engine: Engine):
    """Factory: ``make_user("alice", points=100)`` → user id."""
    counter = {"n": 0}

    def _make(username: str | None = None, points: int = 50, **fields) -> int:
        counter["n"] += 1
        name = username or f"user{counter['n']}"
        with get_session(db_engine) as session:
            user = User(
                username=name,
                email=f"{name}@example.com",
                verse_points=points,
                **fields,
            )
            session.add(user)
            session.flush()
            return user.id

    return _make


def points_of(engine: Engine, user_id: int) -> int:
    with get_session(engine) as session:
        return session.get(User, user_id).verse_points


def auth_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, ttl_days=1)}"}


@pytest.fixture
def client(db_engine: Engine):
    """TestClient running the app's lifespan.

    Used as a context manager so HTTP requests and WebSocket sessions share
    one event loop, and with it one gateway.
    """
    from fastapi.testclient import TestClient

    from verse.api.main import app

    get_gateway.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_gateway.cache_clear()
