"""
verse.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn verse.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.staticfiles import StaticFiles

load_dotenv()

from verse import __version__  # noqa: E402
from verse.api.auth import router as auth_router  # noqa: E402
from verse.api.deps import get_engine  # noqa: E402
from verse.api.routes.challenges import challenges_router, polls_router  # noqa: E402
from verse.api.routes.messages import router as messages_router  # noqa: E402
from verse.api.routes.posts import router as posts_router  # noqa: E402
from verse.api.routes.users import router as users_router  # noqa: E402
from verse.api.ws import router as ws_router  # noqa: E402
from verse.database.engine import init_db  # noqa: E402
from verse.services.errors import ServiceError  # noqa: E402
from verse.services.upload_service import UPLOAD_DIR, ensure_upload_dir  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — create tables, warm the DB engine."""
    ensure_upload_dir()

    engine = get_engine()
    init_db(engine)
    logger.info("Verse API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Verse API shutting down")


app = FastAPI(
    title="Verse API",
    version=__version__,
    lifespan=lifespan,
)

# CORS: the SPA sends the jwt cookie, so credentials must be allowed
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error responses: always {"message": ...}
# ---------------------------------------------------------------------------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse({"message": exc.message}, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"message": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    detail = first.get("msg", "Invalid request")
    return JSONResponse(
        {"message": f"{field}: {detail}" if field else detail},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"message": str(exc)}, status_code=500)


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(posts_router, prefix="/api")
app.include_router(messages_router, prefix="/api")
app.include_router(challenges_router, prefix="/api")
app.include_router(polls_router, prefix="/api")
app.include_router(ws_router)


@app.get("/api/health")
def health():
    return {"status": "ok"}


# Serve uploaded files as static assets
ensure_upload_dir()
app.mount(
    "/api/uploads",
    StaticFiles(directory=str(UPLOAD_DIR)),
    name="uploads",
)
