from abc import ABC, abstractmethod
from pathlib import Path

from feedrank.delivery.models import ChannelInfo, DeliveryHandle


class ChannelTransport(ABC):
    """Messaging destination. Every send raises DeliveryError on failure."""

    async def init(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None

    @abstractmethod
    async def send_text(
        self, chat_id: str, text: str, disable_preview: bool = False
    ) -> DeliveryHandle:
        ...

    @abstractmethod
    async def send_photo(self, chat_id: str, photo: str, caption: str = "") -> DeliveryHandle:
        ...

    @abstractmethod
    async def send_media_group(
        self, chat_id: str, photos: list[str], caption: str = ""
    ) -> DeliveryHandle:
        """Caption goes on the first photo; the handle points at the first message."""
        ...

    @abstractmethod
    async def send_video(
        self,
        chat_id: str,
        video: str | Path,
        caption: str = "",
        duration: int | None = None,
    ) -> DeliveryHandle:
        """`video` is either a URL Telegram fetches itself or a local file to upload."""
        ...

    @abstractmethod
    async def resolve_channel_info(self, identifier: str) -> ChannelInfo:
        ...
