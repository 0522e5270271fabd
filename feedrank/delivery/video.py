"""Playable-URL checks and temporary local staging for video uploads."""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
from urllib.parse import urlparse

import httpx

from feedrank.errors import DeliveryError

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = frozenset({".mp4", ".mov", ".m4v", ".webm", ".mkv", ".avi"})

# Bot API upload ceiling
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def media_extension(url: str | None) -> str | None:
    if not url:
        return None
    suffix = Path(urlparse(url).path).suffix.lower()
    return suffix if suffix in MEDIA_EXTENSIONS else None


def is_direct_media_url(url: str | None) -> bool:
    return media_extension(url) is not None


@asynccontextmanager
async def staged_video(
    client: httpx.AsyncClient, url: str, max_bytes: int = MAX_UPLOAD_BYTES
) -> AsyncIterator[Path]:
    """Download `url` into a temp file that is removed on every exit path."""
    fd, name = tempfile.mkstemp(prefix="feedrank-", suffix=media_extension(url) or ".mp4")
    path = Path(name)
    try:
        size = 0
        with os.fdopen(fd, "wb") as fh:
            try:
                async with client.stream("GET", url, follow_redirects=True) as resp:
                    resp.raise_for_status()
                    async for chunk in resp.aiter_bytes():
                        size += len(chunk)
                        if size > max_bytes:
                            raise DeliveryError(f"Video exceeds the {max_bytes} byte upload limit")
                        fh.write(chunk)
            except httpx.HTTPError as exc:
                raise DeliveryError(f"Video download failed: {exc}") from exc
        if size == 0:
            raise DeliveryError("Video download returned no data")
        logger.debug("Staged %d bytes of video at %s", size, path)
        yield path
    finally:
        path.unlink(missing_ok=True)
