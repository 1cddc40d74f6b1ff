"""
verse.services.upload_service — Media upload handling
======================================================

Post media, profile pictures, message attachments and challenge
submissions all land here.  Files are stored in a configurable
``uploads/`` directory (Docker volume) and served via a static-file
endpoint at ``/api/uploads``.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path

from fastapi import UploadFile

from verse.services.errors import ServiceError

UPLOAD_DIR = Path(os.getenv("VERSE_UPLOAD_DIR", "uploads"))
URL_PREFIX = "/api/uploads/"
MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB, submissions may be short videos
ALLOWED_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp",
    ".mp4", ".webm", ".mov",
}
ALLOWED_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "video/mp4",
    "video/webm",
    "video/quicktime",
}


def ensure_upload_dir() -> None:
    """Create the upload directory if it doesn't exist."""
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)


async def save_upload(filename: str, content: bytes, content_type: str | None = None) -> str:
    """Validate and persist an uploaded file.

    Returns the URL path to the saved file (e.g. ``/api/uploads/abc123.png``).
    Raises :class:`ServiceError` (400) when validation fails.
    """
    if not content:
        raise ServiceError("Uploaded file is empty.")
    if len(content) > MAX_FILE_SIZE:
        raise ServiceError(
            f"File too large: {len(content)} bytes (max {MAX_FILE_SIZE // 1024 // 1024}MB)"
        )

    ext = Path(filename or "").suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ServiceError(
            f"File type not allowed: {ext!r}. "
            f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    if content_type and content_type not in ALLOWED_MIME_TYPES:
        raise ServiceError(
            f"MIME type not allowed: {content_type!r}. "
            f"Allowed: {', '.join(sorted(ALLOWED_MIME_TYPES))}"
        )

    unique_name = f"{uuid.uuid4().hex}{ext}"
    dest = UPLOAD_DIR / unique_name
    ensure_upload_dir()
    await asyncio.to_thread(dest.write_bytes, content)
    return f"{URL_PREFIX}{unique_name}"


async def save_optional(file: UploadFile | None) -> str | None:
    """Persist *file* when the form carried one, else ``None``.

    Browsers send an empty part with no filename for untouched file inputs;
    that counts as no file.
    """
    if file is None or not file.filename:
        return None
    content = await file.read()
    return await save_upload(file.filename, content, file.content_type)


def delete_upload(url_path: str) -> bool:
    """Remove an uploaded file by its URL path.

    Returns True if the file existed and was deleted.
    """
    if not url_path.startswith(URL_PREFIX):
        return False
    filename = url_path.rsplit("/", 1)[-1]
    filepath = UPLOAD_DIR / filename
    if filepath.exists() and filepath.is_file():
        filepath.unlink()
        return True
    return False
