"""
verse.api.deps — FastAPI dependency injection
==============================================

JWT issuing/decoding, the shared engine and config, and the
``get_current_user`` guard every authenticated route depends on.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Cookie, Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from verse.config import VerseConfig, load_config
from verse.database.engine import create_db_engine
from verse.database.models import User

_WEAK_SECRETS = frozenset({
    "verse-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"
AUTH_COOKIE = "jwt"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> VerseConfig:
    return load_config()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def create_access_token(user_id: int, ttl_days: int) -> str:
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(UTC) + timedelta(days=ttl_days),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> int:
    """Return the user id carried by *token*.

    Raises ``InvalidTokenError`` for a bad signature, an expired token or a
    malformed subject.
    """
    payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise InvalidTokenError("Token has no valid subject") from None


def extract_token(authorization: str | None, cookie: str | None) -> str | None:
    """Bearer header wins; the ``jwt`` cookie is the fallback."""
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return cookie or None


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------
def get_current_user_id(
    authorization: Annotated[str | None, Header()] = None,
    jwt_cookie: Annotated[str | None, Cookie(alias=AUTH_COOKIE)] = None,
) -> int:
    """Validate the caller's JWT and return their user id.  401 otherwise."""
    token = extract_token(authorization, jwt_cookie)
    if token is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized - no token provided.")
    try:
        return decode_token(token)
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized - invalid token.")


def user_exists(engine: Engine, user_id: int) -> bool:
    with Session(engine) as session:
        return session.get(User, user_id) is not None


def get_current_user(
    user_id: Annotated[int, Depends(get_current_user_id)],
    engine: Annotated[Engine, Depends(get_engine)],
) -> int:
    """Like :func:`get_current_user_id` but also rejects tokens whose user
    no longer exists."""
    if not user_exists(engine, user_id):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized - user not found.")
    return user_id


CurrentUser = Annotated[int, Depends(get_current_user)]
