"""Per-channel delivery with media-aware fallback, and fanout over channels.

Strategy order per post:
  2+ photos  -> media group -> first photo -> text listing photo links
  1 photo    -> photo -> text with the photo link
  video      -> direct file URL -> staged upload -> watch link (thumbnail or text)
  no media   -> text
"""

from __future__ import annotations

import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from feedrank.delivery.base import ChannelTransport
from feedrank.delivery.fallback import FallbackChain, Strategy
from feedrank.delivery.formatter import (
    CAPTION_LIMIT,
    TEXT_LIMIT,
    build_caption,
    photo_links_text,
    watch_link_text,
)
from feedrank.delivery.models import (
    DeliveryHandle,
    DeliveryOptions,
    DeliveryOutcome,
    FanoutResult,
)
from feedrank.delivery.video import is_direct_media_url, staged_video
from feedrank.errors import DeliveryError
from feedrank.ingestion.base import FeedSource
from feedrank.ingestion.models import Attachment
from feedrank.ingestion.vk import extract_video_ids
from feedrank.storage.models import Channel, Delivery, Post, Source, utcnow

logger = logging.getLogger(__name__)


def _attachments(post: Post) -> list[Attachment]:
    return [Attachment.model_validate(raw) for raw in post.attachments or []]


class DeliveryEngine:
    def __init__(
        self,
        transport: ChannelTransport,
        feed: FeedSource,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._transport = transport
        self._feed = feed
        self._http = http_client

    # --- strategy construction ---

    def strategies_for(
        self, post: Post, chat_id: str, options: DeliveryOptions
    ) -> list[Strategy]:
        attachments = _attachments(post)
        photos = [a.url for a in attachments if a.type == "photo" and a.url]
        video = next((a for a in attachments if a.type == "video"), None)
        transport = self._transport

        if len(photos) >= 2:
            caption = build_caption(post, options, CAPTION_LIMIT)
            return [
                Strategy("media_group", lambda: transport.send_media_group(chat_id, photos, caption)),
                Strategy("photo", lambda: transport.send_photo(chat_id, photos[0], caption)),
                Strategy(
                    "photo_links",
                    lambda: transport.send_text(chat_id, photo_links_text(post, photos, options)),
                ),
            ]

        if len(photos) == 1:
            caption = build_caption(post, options, CAPTION_LIMIT)
            return [
                Strategy("photo", lambda: transport.send_photo(chat_id, photos[0], caption)),
                Strategy(
                    "photo_links",
                    lambda: transport.send_text(chat_id, photo_links_text(post, photos, options)),
                ),
            ]

        if video is not None:
            return self._video_strategies(post, chat_id, video, options)

        text = build_caption(post, options, TEXT_LIMIT)
        return [Strategy("text", lambda: transport.send_text(chat_id, text))]

    def _video_strategies(
        self, post: Post, chat_id: str, video: Attachment, options: DeliveryOptions
    ) -> list[Strategy]:
        transport = self._transport
        caption = build_caption(post, options, CAPTION_LIMIT)
        watch_url = video.url or post.original_url
        strategies: list[Strategy] = []

        if is_direct_media_url(video.direct_url):
            strategies.append(
                Strategy(
                    "video_url",
                    lambda: transport.send_video(chat_id, video.direct_url, caption, video.duration),
                )
            )
        strategies.append(
            Strategy("video_upload", lambda: self._upload_video(chat_id, video, caption))
        )
        if video.thumbnail_url:
            strategies.append(
                Strategy(
                    "video_link_photo",
                    lambda: transport.send_photo(
                        chat_id,
                        video.thumbnail_url,
                        watch_link_text(post, watch_url, options, CAPTION_LIMIT),
                    ),
                )
            )
        strategies.append(
            Strategy(
                "video_link",
                lambda: transport.send_text(chat_id, watch_link_text(post, watch_url, options)),
            )
        )
        return strategies

    async def _playable_url(self, video: Attachment) -> tuple[str, int | None]:
        if video.owner_id and video.media_id:
            ids = (video.owner_id, video.media_id)
        else:
            ids = extract_video_ids(video.url)
        if ids is None:
            raise DeliveryError(f"Cannot identify video {video.url!r}")

        try:
            info = await self._feed.get_video_info(*ids)
        except DeliveryError:
            raise
        except Exception as exc:
            # malformed upstream answers included; the link tiers still apply
            raise DeliveryError(f"Video info lookup failed: {exc!r}") from exc

        if not info.playable_urls:
            raise DeliveryError(f"No playable file for video {ids[0]}_{ids[1]}")
        return info.playable_urls[0], info.duration_seconds or video.duration

    async def _upload_video(
        self, chat_id: str, video: Attachment, caption: str
    ) -> DeliveryHandle:
        url, duration = await self._playable_url(video)
        try:
            async with staged_video(self._http, url) as path:
                return await self._transport.send_video(chat_id, path, caption, duration)
        except OSError as exc:
            raise DeliveryError(f"Video staging failed: {exc}") from exc

    # --- delivery ---

    async def deliver(
        self,
        session: AsyncSession,
        post: Post,
        channel: Channel,
        options: DeliveryOptions | None = None,
    ) -> DeliveryOutcome:
        """Send one post to one channel; record the delivery on success.

        Only the last strategy's failure is reported; earlier ones are logged.
        """
        options = options or DeliveryOptions()
        chain = FallbackChain(self.strategies_for(post, channel.chat_id, options))
        try:
            attempt = await chain.run()
        except DeliveryError as exc:
            logger.warning(
                "Post %d -> channel %s failed after %d attempt(s): %s",
                post.id, channel.chat_id, len(chain.attempts), exc,
            )
            return DeliveryOutcome(channel_id=channel.id, error=str(exc))

        session.add(
            Delivery(
                post_id=post.id,
                channel_id=channel.id,
                message_id=attempt.handle.message_id,
                strategy=attempt.strategy,
                delivered_at=utcnow(),
            )
        )
        channel.forwarded_count = (channel.forwarded_count or 0) + 1
        await session.commit()

        logger.info(
            "Post %d delivered to %s via %s (message %s)",
            post.id, channel.chat_id, attempt.strategy, attempt.handle.message_id,
        )
        return DeliveryOutcome(
            channel_id=channel.id,
            strategy=attempt.strategy,
            message_id=attempt.handle.message_id,
        )

    async def fanout(
        self,
        session: AsyncSession,
        post: Post,
        channels: list[Channel],
        options: DeliveryOptions | None = None,
    ) -> FanoutResult:
        """Deliver to every channel. The first success marks the post forwarded.

        Failed channels are not retried in this pass and successes are never
        rolled back.
        """
        options = options or DeliveryOptions()
        result = FanoutResult()
        post_id = post.id

        for channel in channels:
            chat_id, channel_id = channel.chat_id, channel.id
            try:
                outcome = await self.deliver(session, post, channel, options)
            except Exception as exc:
                logger.exception("Post %d -> channel %s raised unexpectedly", post_id, chat_id)
                outcome = DeliveryOutcome(channel_id=channel_id, error=repr(exc))
            if not outcome.ok:
                result.failed.append(outcome)
                continue

            first = not result.delivered
            result.delivered.append(outcome)
            if first:
                await self._after_first_success(session, post, options)

        if channels and not result.delivered:
            logger.warning("Post %d was not delivered to any of %d channel(s)", post_id, len(channels))
        return result

    async def _after_first_success(
        self, session: AsyncSession, post: Post, options: DeliveryOptions
    ) -> None:
        if options.mark_forwarded and post.status != "forwarded":
            post.transition_to("forwarded")
        source = await session.get(Source, post.source_id)
        if source is not None:
            source.last_checked_at = utcnow()
        await session.commit()
