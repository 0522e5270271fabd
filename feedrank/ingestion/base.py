from abc import ABC, abstractmethod

from feedrank.ingestion.models import FeedItem, VideoInfo


class FeedSource(ABC):
    """A polled content feed. Constructed once at startup and shared."""

    async def init(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    @abstractmethod
    async def resolve_identifier(self, name: str) -> str:
        """Map a human-facing name to the feed's external id. Raises UpstreamNotFoundError."""
        ...

    @abstractmethod
    async def fetch_items(self, external_id: str, count: int) -> list[FeedItem]:
        """Most recent items first. Raises UpstreamAuthError on credential problems."""
        ...

    @abstractmethod
    async def get_video_info(self, owner_id: str, video_id: str) -> VideoInfo:
        ...
