"""Periodic forwarding of viral posts still waiting for delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedrank.delivery.engine import DeliveryEngine
from feedrank.delivery.models import DeliveryOptions
from feedrank.routing.resolver import resolve_channels
from feedrank.storage.repository import get_forwardable_posts, get_post

logger = logging.getLogger(__name__)

FORWARDABLE_STATUSES = ("pending", "approved")


@dataclass
class PendingResult:
    processed: int = 0
    forwarded: int = 0
    errors: int = 0


class PendingSweep:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        delivery: DeliveryEngine,
    ) -> None:
        self._session_factory = session_factory
        self._delivery = delivery

    async def run(self) -> PendingResult:
        async with self._session_factory() as session:
            post_ids = [p.id for p in await get_forwardable_posts(session)]

        result = PendingResult(processed=len(post_ids))
        for post_id in post_ids:
            try:
                async with self._session_factory() as session:
                    await self.forward(session, post_id, result)
            except Exception:
                logger.exception("Error forwarding pending post %d", post_id)
                result.errors += 1

        if post_ids:
            logger.info(
                "Pending sweep: processed=%d forwarded=%d errors=%d",
                result.processed, result.forwarded, result.errors,
            )
        return result

    async def forward(
        self, session: AsyncSession, post_id: int, result: PendingResult | None = None
    ) -> bool:
        """Fan one post out to its channels. True if any channel received it."""
        post = await get_post(session, post_id)
        if post is None or post.status not in FORWARDABLE_STATUSES:
            return False

        channels = await resolve_channels(session, post.source_id)
        if not channels:
            logger.debug("Post %d has no destination channels", post_id)
            return False

        fanout = await self._delivery.fanout(session, post, channels, DeliveryOptions())
        if result is not None:
            result.errors += len(fanout.failed)
            if fanout.any_delivered:
                result.forwarded += 1
        return fanout.any_delivered
