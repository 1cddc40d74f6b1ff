"""
verse.api.auth — Google OAuth2 sign-in
=======================================

``GET /api/auth/google`` redirects to Google's consent screen with a
one-time ``state``; the callback exchanges the code, links or creates the
Verse account, sets the ``jwt`` cookie and hands the token to the
frontend.
"""

from __future__ import annotations

import logging
import os
import secrets
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse

from sqlalchemy import delete

from verse.api.deps import AUTH_COOKIE, create_access_token, get_config, get_engine
from verse.config import VerseConfig
from verse.database.engine import get_session, run_db
from verse.database.models import OAuthState
from verse.services import user_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
OAUTH_STATE_TTL_SECONDS = 600


def _oauth_env() -> tuple[str, str, str, str]:
    """Return required OAuth env vars or raise a clear 500."""
    client_id = os.getenv("GOOGLE_CLIENT_ID", "").strip()
    client_secret = os.getenv("GOOGLE_CLIENT_SECRET", "").strip()
    redirect_uri = os.getenv("GOOGLE_REDIRECT_URI", "").strip()
    frontend_url = os.getenv("FRONTEND_URL", "").strip()

    missing = []
    if not client_id:
        missing.append("GOOGLE_CLIENT_ID")
    if not client_secret:
        missing.append("GOOGLE_CLIENT_SECRET")
    if not redirect_uri:
        missing.append("GOOGLE_REDIRECT_URI")
    if not frontend_url:
        missing.append("FRONTEND_URL")

    if missing:
        raise HTTPException(
            status_code=500,
            detail="Google OAuth is not configured: missing " + ", ".join(missing),
        )

    return client_id, client_secret, redirect_uri, frontend_url.rstrip("/")


def _store_oauth_state(engine, state: str) -> None:
    """Persist an OAuth state token and prune stale entries."""
    cutoff = datetime.now(UTC) - timedelta(seconds=OAUTH_STATE_TTL_SECONDS)
    with get_session(engine) as session:
        session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        session.add(OAuthState(state=state))


def _consume_oauth_state(engine, state: str) -> bool:
    """Consume a one-time OAuth state token if valid and unexpired."""
    cutoff = datetime.now(UTC) - timedelta(seconds=OAUTH_STATE_TTL_SECONDS)
    with get_session(engine) as session:
        session.execute(delete(OAuthState).where(OAuthState.created_at < cutoff))
        row = session.get(OAuthState, state)
        if row is None:
            return False
        session.delete(row)
        return True


@router.get("/google")
async def google_login(engine=Depends(get_engine)):
    """Redirect to the Google consent screen."""
    client_id, _, redirect_uri, _ = _oauth_env()

    state = secrets.token_urlsafe(32)
    await run_db(_store_oauth_state, engine, state)

    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "prompt": "select_account",
        }
    )
    return RedirectResponse(f"{GOOGLE_AUTHORIZE_URL}?{query}")


@router.get("/google/callback")
async def google_callback(
    code: str,
    state: str,
    cfg: VerseConfig = Depends(get_config),
    engine=Depends(get_engine),
):
    """Exchange the OAuth code for a Verse session."""
    client_id, client_secret, redirect_uri, frontend_url = _oauth_env()

    if not await run_db(_consume_oauth_state, engine, state):
        raise HTTPException(400, "Invalid or expired OAuth state")

    transport = httpx.AsyncHTTPTransport(retries=1)
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        token_resp = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        if token_resp.status_code != 200:
            raise HTTPException(400, "OAuth token exchange failed")

        access_token = token_resp.json().get("access_token")
        if not access_token:
            raise HTTPException(400, "No access token returned")

        user_resp = await client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    if user_resp.status_code != 200:
        raise HTTPException(400, "Failed to fetch Google user")

    info = user_resp.json()
    if not info.get("sub") or not info.get("email"):
        raise HTTPException(400, "Google account has no verified email")

    user = await run_db(
        user_service.upsert_google_user,
        engine,
        cfg,
        google_id=info["sub"],
        name=info.get("name", ""),
        email=info["email"],
        picture=info.get("picture"),
    )
    token = create_access_token(user["_id"], cfg.token_ttl_days)
    logger.info("User %d signed in with Google", user["_id"])

    response = RedirectResponse(f"{frontend_url}/auth/callback?token={token}")
    response.set_cookie(
        AUTH_COOKIE,
        token,
        max_age=cfg.token_ttl_days * 24 * 3600,
        httponly=True,
        samesite="lax",
    )
    return response
