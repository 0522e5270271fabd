"""VK community wall feed over the public VK API (HTTP, via httpx)."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

import httpx

from feedrank.config import settings
from feedrank.errors import FeedRankError, UpstreamAuthError, UpstreamNotFoundError
from feedrank.ingestion.base import FeedSource
from feedrank.ingestion.models import Attachment, FeedItem, VideoInfo

logger = logging.getLogger(__name__)

# VK error codes
_AUTH_FAILED = 5
_NOT_FOUND_CODES = {15, 18, 30, 100, 113, 203}

_WALL_PAGE_SIZE = 100
_VIDEO_QUALITIES = ("mp4_1080", "mp4_720", "mp4_480", "mp4_360", "mp4_240", "mp4_144")
_URL_PREFIX_RE = re.compile(r"^(?:https?://)?(?:m\.)?vk\.com/", re.IGNORECASE)
_VIDEO_ID_PATTERNS = (
    re.compile(r"video(-?\d+)_(\d+)"),
    re.compile(r"video/(-?\d+)_(\d+)"),
)
_OLD_VIDEO_ID_PATTERN = re.compile(r"video\.php\?vid=(\d+)&owner_id=(-?\d+)")


class VkApiError(FeedRankError):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"VK API error {code}: {message}")
        self.code = code


def extract_video_ids(url: str | None) -> tuple[str, str] | None:
    """(owner_id, video_id) from a vk.com video URL, or None."""
    if not url:
        return None
    for pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1), match.group(2)
    match = _OLD_VIDEO_ID_PATTERN.search(url)
    if match:
        return match.group(2), match.group(1)
    return None


def _best_video_file(files: dict[str, Any] | None) -> list[str]:
    if not files:
        return []
    return [files[q] for q in _VIDEO_QUALITIES if files.get(q)]


def _parse_attachment(raw: dict[str, Any]) -> Attachment:
    kind = raw.get("type", "other")

    if kind == "photo":
        sizes = (raw.get("photo") or {}).get("sizes") or []
        largest = max(sizes, key=lambda s: s.get("width") or 0, default={})
        thumb = next((s for s in sizes if s.get("type") == "x"), sizes[0] if sizes else {})
        return Attachment(type="photo", url=largest.get("url"), thumbnail_url=thumb.get("url"))

    if kind == "video":
        video = raw.get("video") or {}
        owner_id = str(video.get("owner_id", ""))
        media_id = str(video.get("id", ""))
        images = video.get("image") or []
        direct = _best_video_file(video.get("files"))
        return Attachment(
            type="video",
            url=f"https://vk.com/video{owner_id}_{media_id}",
            thumbnail_url=images[-1].get("url") if images else None,
            direct_url=direct[0] if direct else None,
            owner_id=owner_id,
            media_id=media_id,
            duration=video.get("duration"),
            title=video.get("title"),
        )

    if kind == "link":
        link = raw.get("link") or {}
        sizes = ((link.get("photo") or {}).get("sizes")) or []
        return Attachment(
            type="link",
            url=link.get("url"),
            thumbnail_url=sizes[0].get("url") if sizes else None,
        )

    if kind in ("doc", "audio", "poll"):
        return Attachment(type=kind)
    return Attachment(type="other")


def parse_wall_post(raw: dict[str, Any], group_id: str) -> FeedItem:
    post_id = str(raw.get("id"))
    published = raw.get("date")
    return FeedItem(
        external_id=post_id,
        text=raw.get("text") or "",
        view_count=(raw.get("views") or {}).get("count", 0),
        like_count=(raw.get("likes") or {}).get("count", 0),
        repost_count=(raw.get("reposts") or {}).get("count", 0),
        published_at=(
            datetime.fromtimestamp(published, tz=timezone.utc).replace(tzinfo=None)
            if published
            else None
        ),
        url=f"https://vk.com/wall-{group_id.lstrip('-')}_{post_id}",
        attachments=[_parse_attachment(a) for a in raw.get("attachments") or []],
    )


class VkFeedSource(FeedSource):
    def __init__(
        self,
        access_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = access_token if access_token is not None else settings.vk_access_token
        self._client = client
        self._owns_client = client is None

    async def init(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        if not self._token:
            logger.warning("VK_ACCESS_TOKEN is not set, every feed call will fail")

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, **params: Any) -> Any:
        if not self._token:
            raise UpstreamAuthError("VK_ACCESS_TOKEN is missing")
        if self._client is None:
            await self.init()

        params.update(access_token=self._token, v=settings.vk_api_version)
        resp = await self._client.get(f"{settings.vk_api_base}/{method}", params=params)
        resp.raise_for_status()
        data = resp.json()

        error = data.get("error")
        if error:
            code = int(error.get("error_code", 0))
            message = error.get("error_msg", "")
            if code == _AUTH_FAILED:
                raise UpstreamAuthError(f"VK authentication failed: {message}")
            raise VkApiError(code, message)
        return data.get("response")

    async def resolve_identifier(self, name: str) -> str:
        screen_name = _URL_PREFIX_RE.sub("", name.strip()).strip("/")
        if screen_name.startswith(("public", "club")) and screen_name[-1:].isdigit():
            screen_name = re.sub(r"^(public|club)", "", screen_name)
        if not screen_name:
            raise UpstreamNotFoundError(f"Empty VK group name {name!r}")

        try:
            response = await self._call("groups.getById", group_id=screen_name.lstrip("-"))
            groups = response.get("groups", []) if isinstance(response, dict) else response
            if groups:
                return str(groups[0]["id"])
        except VkApiError as exc:
            logger.debug("groups.getById failed for %r: %s", screen_name, exc)

        if not screen_name.lstrip("-").isdigit():
            try:
                resolved = await self._call("utils.resolveScreenName", screen_name=screen_name)
                if resolved and resolved.get("type") in ("group", "page", "event"):
                    return str(resolved["object_id"])
            except VkApiError as exc:
                logger.debug("utils.resolveScreenName failed for %r: %s", screen_name, exc)

        raise UpstreamNotFoundError(f'VK group "{name}" not found or not accessible')

    async def fetch_items(self, external_id: str, count: int) -> list[FeedItem]:
        group_id = external_id.lstrip("-")
        items: list[FeedItem] = []
        offset = 0
        while len(items) < count:
            page_size = min(_WALL_PAGE_SIZE, count - len(items))
            try:
                response = await self._call(
                    "wall.get",
                    owner_id=f"-{group_id}",
                    count=page_size,
                    offset=offset,
                    extended=1,
                )
            except VkApiError as exc:
                if exc.code in _NOT_FOUND_CODES:
                    raise UpstreamNotFoundError(str(exc)) from exc
                raise

            raw_items = (response or {}).get("items") or []
            items.extend(parse_wall_post(raw, group_id) for raw in raw_items)
            offset += len(raw_items)
            if len(raw_items) < page_size:
                break

        logger.info("Fetched %d posts from VK group %s", len(items), group_id)
        return items

    async def get_video_info(self, owner_id: str, video_id: str) -> VideoInfo:
        response = await self._call("video.get", videos=f"{owner_id}_{video_id}", extended=1)
        videos = (response or {}).get("items") or []
        if not videos:
            raise UpstreamNotFoundError(f"No video data for {owner_id}_{video_id}")

        video = videos[0]
        images = video.get("image") or []
        return VideoInfo(
            playable_urls=_best_video_file(video.get("files")),
            thumbnail_url=images[-1].get("url") if images else None,
            duration_seconds=video.get("duration") or 0,
            title=video.get("title") or "",
        )
