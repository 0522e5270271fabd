import logging
import re
from pathlib import Path

import telegram
from telegram import InputMediaPhoto, LinkPreviewOptions
from telegram.constants import ParseMode

from feedrank.config import settings
from feedrank.delivery.base import ChannelTransport
from feedrank.delivery.models import ChannelInfo, DeliveryHandle
from feedrank.errors import DeliveryError, UpstreamNotFoundError

logger = logging.getLogger(__name__)

_NUMERIC_RE = re.compile(r"^-?\d+$")
_TME_RE = re.compile(r"^(?:https?://)?t\.me/", re.IGNORECASE)


def normalize_chat_identifier(identifier: str) -> str:
    """`@name`, `-100…` ids and bare numbers/names into what getChat accepts."""
    identifier = identifier.strip()
    if _TME_RE.match(identifier):
        identifier = "@" + _TME_RE.sub("", identifier).strip("/")
    if identifier.startswith("@"):
        return identifier
    if _NUMERIC_RE.match(identifier):
        return identifier if identifier.startswith("-") else f"-100{identifier}"
    return f"@{identifier}"


class TelegramTransport(ChannelTransport):
    """Channel delivery through the Telegram Bot API."""

    def __init__(self, token: str | None = None, bot: telegram.Bot | None = None) -> None:
        self._bot = bot or telegram.Bot(token=token or settings.telegram_bot_token)

    async def init(self) -> None:
        await self._bot.initialize()
        logger.info("Telegram transport ready as @%s", self._bot.username)

    async def shutdown(self) -> None:
        await self._bot.shutdown()

    async def send_text(
        self, chat_id: str, text: str, disable_preview: bool = False
    ) -> DeliveryHandle:
        try:
            message = await self._bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=ParseMode.HTML,
                link_preview_options=LinkPreviewOptions(is_disabled=disable_preview),
            )
        except telegram.error.TelegramError as exc:
            raise DeliveryError(f"sendMessage to {chat_id} failed: {exc}") from exc
        return DeliveryHandle(chat_id=chat_id, message_id=str(message.message_id))

    async def send_photo(self, chat_id: str, photo: str, caption: str = "") -> DeliveryHandle:
        try:
            message = await self._bot.send_photo(
                chat_id=chat_id,
                photo=photo,
                caption=caption or None,
                parse_mode=ParseMode.HTML,
            )
        except telegram.error.TelegramError as exc:
            raise DeliveryError(f"sendPhoto to {chat_id} failed: {exc}") from exc
        return DeliveryHandle(chat_id=chat_id, message_id=str(message.message_id))

    async def send_media_group(
        self, chat_id: str, photos: list[str], caption: str = ""
    ) -> DeliveryHandle:
        media = [
            InputMediaPhoto(
                media=url,
                caption=caption if i == 0 and caption else None,
                parse_mode=ParseMode.HTML if i == 0 else None,
            )
            for i, url in enumerate(photos[:10])  # Telegram album limit
        ]
        try:
            messages = await self._bot.send_media_group(chat_id=chat_id, media=media)
        except telegram.error.TelegramError as exc:
            raise DeliveryError(f"sendMediaGroup to {chat_id} failed: {exc}") from exc
        if not messages:
            raise DeliveryError(f"sendMediaGroup to {chat_id} returned no messages")
        return DeliveryHandle(chat_id=chat_id, message_id=str(messages[0].message_id))

    async def send_video(
        self,
        chat_id: str,
        video: str | Path,
        caption: str = "",
        duration: int | None = None,
    ) -> DeliveryHandle:
        try:
            message = await self._bot.send_video(
                chat_id=chat_id,
                video=video,
                caption=caption or None,
                parse_mode=ParseMode.HTML,
                duration=duration,
                supports_streaming=True,
            )
        except telegram.error.TelegramError as exc:
            raise DeliveryError(f"sendVideo to {chat_id} failed: {exc}") from exc
        return DeliveryHandle(chat_id=chat_id, message_id=str(message.message_id))

    async def resolve_channel_info(self, identifier: str) -> ChannelInfo:
        chat_ref = normalize_chat_identifier(identifier)
        try:
            chat = await self._bot.get_chat(chat_id=chat_ref)
        except telegram.error.BadRequest as exc:
            raise UpstreamNotFoundError(
                f"Could not resolve channel {chat_ref}. Make sure the bot is an admin "
                "of the channel and the identifier is correct."
            ) from exc
        except telegram.error.TelegramError as exc:
            raise DeliveryError(f"getChat {chat_ref} failed: {exc}") from exc

        return ChannelInfo(
            id=str(chat.id),
            title=chat.title or chat_ref,
            username=f"@{chat.username}" if chat.username else "",
        )
