"""Per-source ingestion sweep.

threshold -> fetch -> stop-word filter -> sequential upsert -> became-viral
fanout -> view history -> last_checked_at.

Each item runs in its own session so a duplicate-key rollback on one item
never expires the state another item is working with.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedrank.config import settings
from feedrank.delivery.engine import DeliveryEngine
from feedrank.delivery.models import DeliveryOptions
from feedrank.errors import PersistenceConflict, SourceNotFoundError
from feedrank.ingestion.base import FeedSource
from feedrank.ingestion.models import FeedItem
from feedrank.routing.resolver import resolve_channels
from feedrank.scoring.models import ThresholdMethod, ThresholdStats
from feedrank.scoring.stop_words import load_stop_words, matches
from feedrank.scoring.threshold import clamp_multiplier, compute_stats
from feedrank.storage.models import Post, Source, ViewHistory, utcnow
from feedrank.storage.repository import (
    get_latest_view_entry,
    get_post_by_external_id,
    get_source,
    prune_view_history,
    save_post,
    save_view_entry,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    source_id: int
    fetched: int = 0
    filtered: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    viral: int = 0
    forwarded: int = 0


class IngestionPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: FeedSource,
        delivery: DeliveryEngine,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self._delivery = delivery
        # one sweep per source at a time: scheduled and on-demand runs queue up
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    # --- threshold ---

    async def recalculate_threshold(
        self,
        session: AsyncSession,
        source: Source,
        method: ThresholdMethod,
        sample_size: int,
        multiplier: float | None = None,
    ) -> ThresholdStats:
        """Sample the feed, recompute the cutoff and persist it on the source.

        An absent multiplier falls back to the source's stored one. The
        multiplier is stored whatever the method so switching back to
        statistical keeps it.
        """
        items = await self._feed.fetch_items(source.external_id, sample_size)
        used = clamp_multiplier(
            multiplier if multiplier is not None else source.statistical_multiplier
        )
        stats = compute_stats([item.view_count for item in items], method, used)

        source.threshold_method = method
        source.statistical_multiplier = used
        source.calculated_threshold = stats.threshold
        source.threshold_stats = stats.rounded().model_dump()
        source.threshold_calculated_at = utcnow()
        await session.commit()

        logger.info(
            "Source %d threshold recalculated: %d (%s, n=%d, mean=%.1f, std=%.1f)",
            source.id, stats.threshold, method, stats.count, stats.mean, stats.std_dev,
        )
        return stats

    async def resolve_threshold(self, session: AsyncSession, source: Source) -> int:
        if source.threshold_type == "manual":
            return source.manual_threshold or 0
        if source.calculated_threshold:
            return source.calculated_threshold

        logger.info("Source %d has no calculated threshold yet, computing one", source.id)
        stats = await self.recalculate_threshold(
            session,
            source,
            source.threshold_method,
            settings.threshold_sample_size,
            source.statistical_multiplier,
        )
        return stats.threshold

    # --- sweep ---

    async def process_source(self, source_id: int) -> SweepResult:
        async with self._locks[source_id]:
            return await self._sweep(source_id)

    async def _sweep(self, source_id: int) -> SweepResult:
        result = SweepResult(source_id=source_id)

        async with self._session_factory() as session:
            source = await get_source(session, source_id)
            if source is None:
                raise SourceNotFoundError(f"Source {source_id} not found")

            threshold = await self.resolve_threshold(session, source)
            items = await self._feed.fetch_items(source.external_id, source.posts_to_check)
            stop_words = await load_stop_words(session, source_id)
            tracking = source.experimental_tracking_enabled
            name = source.name

        result.fetched = len(items)
        kept: list[FeedItem] = []
        for item in items:
            word = matches(item.text, stop_words)
            if word is not None:
                logger.debug("Post %s of source %d dropped by stop word %r", item.external_id, source_id, word)
                result.filtered += 1
                continue
            kept.append(item)

        for item in kept:
            try:
                async with self._session_factory() as session:
                    await self._process_item(session, source_id, item, threshold, tracking, result)
            except PersistenceConflict as exc:
                logger.info("Skipping post %s: %s", item.external_id, exc)
                result.skipped += 1
            except Exception:
                logger.exception("Error processing post %s of source %d", item.external_id, source_id)
                result.errors += 1

        async with self._session_factory() as session:
            if tracking:
                cutoff = utcnow() - timedelta(days=settings.view_history_retention_days)
                pruned = await prune_view_history(session, cutoff)
                if pruned:
                    logger.debug("Pruned %d view history entries", pruned)
            source = await get_source(session, source_id)
            if source is not None:
                source.last_checked_at = utcnow()
                await session.commit()

        logger.info(
            "Sweep %s (#%d): fetched=%d filtered=%d created=%d updated=%d "
            "skipped=%d errors=%d viral=%d forwarded=%d threshold=%d",
            name, source_id, result.fetched, result.filtered, result.created,
            result.updated, result.skipped, result.errors, result.viral,
            result.forwarded, threshold,
        )
        return result

    async def _process_item(
        self,
        session: AsyncSession,
        source_id: int,
        item: FeedItem,
        threshold: int,
        tracking: bool,
        result: SweepResult,
    ) -> None:
        is_viral = item.view_count > threshold
        attachments = [a.model_dump() for a in item.attachments]
        post = await get_post_by_external_id(session, source_id, item.external_id)

        became_viral = False
        if post is None:
            post = Post(
                source_id=source_id,
                external_post_id=item.external_id,
                text=item.text,
                view_count=item.view_count,
                like_count=item.like_count,
                repost_count=item.repost_count,
                attachments=attachments,
                is_viral=is_viral,
                threshold_used=threshold,
                original_url=item.url,
                published_at=item.published_at,
            )
            post = await save_post(session, post)
            result.created += 1
        else:
            became_viral = is_viral and not post.is_viral
            post.text = item.text
            post.view_count = item.view_count
            post.like_count = item.like_count
            post.repost_count = item.repost_count
            post.attachments = attachments
            post.is_viral = is_viral
            post.threshold_used = threshold
            post = await save_post(session, post)
            result.updated += 1

        if is_viral:
            result.viral += 1

        if became_viral and post.status == "pending":
            channels = await resolve_channels(session, source_id)
            if channels:
                fanout = await self._delivery.fanout(session, post, channels, DeliveryOptions())
                if fanout.any_delivered:
                    result.forwarded += 1
            else:
                logger.info("Post %d became viral but source %d has no channels", post.id, source_id)

        if tracking:
            await self._record_views(session, post, item.view_count)

    async def _record_views(self, session: AsyncSession, post: Post, view_count: int) -> None:
        now = utcnow()
        last = await get_latest_view_entry(session, post.id)

        view_delta = 0
        time_delta = 0.0
        growth_rate = 0.0
        if last is not None:
            view_delta = view_count - last.view_count
            time_delta = (now - last.timestamp).total_seconds() / 60
            if time_delta > 0:
                growth_rate = view_delta / time_delta

        await save_view_entry(
            session,
            ViewHistory(
                post_id=post.id,
                source_id=post.source_id,
                external_post_id=post.external_post_id,
                view_count=view_count,
                timestamp=now,
                view_delta=view_delta,
                time_delta_minutes=time_delta,
                growth_rate=growth_rate,
            ),
        )
