from datetime import datetime
from typing import Literal

from pydantic import BaseModel

AttachmentType = Literal["photo", "video", "link", "doc", "audio", "poll", "other"]


class Attachment(BaseModel):
    type: AttachmentType = "other"
    url: str | None = None
    thumbnail_url: str | None = None
    # video only
    direct_url: str | None = None
    owner_id: str | None = None
    media_id: str | None = None
    duration: int | None = None
    title: str | None = None


class FeedItem(BaseModel):
    external_id: str
    text: str = ""
    view_count: int = 0
    like_count: int = 0
    repost_count: int = 0
    published_at: datetime | None = None
    url: str = ""
    attachments: list[Attachment] = []


class VideoInfo(BaseModel):
    playable_urls: list[str] = []
    thumbnail_url: str | None = None
    duration_seconds: int = 0
    title: str = ""
