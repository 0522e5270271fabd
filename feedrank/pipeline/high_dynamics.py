"""Early-growth detection for posts that have not crossed the viral threshold.

Each candidate is evaluated on exactly its newest `min_data_points` view
samples. A post that fires is flagged and never looked at again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedrank.config import settings
from feedrank.delivery.engine import DeliveryEngine
from feedrank.delivery.models import DeliveryOptions
from feedrank.routing.resolver import resolve_channels
from feedrank.storage.models import Post, ViewHistory, utcnow
from feedrank.storage.repository import (
    get_high_dynamics_candidates,
    get_high_dynamics_sources,
    get_recent_view_entries,
)

logger = logging.getLogger(__name__)


@dataclass
class HighDynamicsResult:
    checked: int = 0
    triggered: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass(frozen=True)
class GrowthWindow:
    average_rate: float
    window_minutes: float


def growth_window(entries: list[ViewHistory]) -> GrowthWindow:
    """Average growth rate over the entries and the minutes they span."""
    if not entries:
        return GrowthWindow(0.0, 0.0)
    average = sum(e.growth_rate or 0.0 for e in entries) / len(entries)
    timestamps = [e.timestamp for e in entries]
    span = (max(timestamps) - min(timestamps)).total_seconds() / 60
    return GrowthWindow(average, span)


class HighDynamicsSweep:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        delivery: DeliveryEngine,
    ) -> None:
        self._session_factory = session_factory
        self._delivery = delivery
        self._unrouted: set[int] = set()

    async def run(self) -> HighDynamicsResult:
        result = HighDynamicsResult()
        since = utcnow() - timedelta(hours=settings.high_dynamics_lookback_hours)

        async with self._session_factory() as session:
            sources = await get_high_dynamics_sources(session)
            work = [
                (s.id, s.hd_growth_rate_threshold, s.hd_min_data_points) for s in sources
            ]

        for source_id, rate_threshold, min_points in work:
            async with self._session_factory() as session:
                candidates = await get_high_dynamics_candidates(session, source_id, since)
                post_ids = [p.id for p in candidates]

            for post_id in post_ids:
                result.checked += 1
                try:
                    async with self._session_factory() as session:
                        await self._evaluate(
                            session, post_id, source_id, rate_threshold, min_points, result
                        )
                except Exception:
                    logger.exception("High-dynamics check failed for post %d", post_id)
                    result.errors += 1

        if result.checked:
            logger.info(
                "High-dynamics sweep: checked=%d triggered=%d skipped=%d errors=%d",
                result.checked, result.triggered, result.skipped, result.errors,
            )
        return result

    async def _evaluate(
        self,
        session: AsyncSession,
        post_id: int,
        source_id: int,
        rate_threshold: float,
        min_points: int,
        result: HighDynamicsResult,
    ) -> None:
        post = await session.get(Post, post_id)
        if post is None or post.was_high_dynamics or post.is_viral:
            return

        entries = await get_recent_view_entries(session, post_id, min_points)
        if len(entries) < min_points:
            result.skipped += 1
            return

        window = growth_window(entries)
        if window.average_rate < rate_threshold:
            return

        channels = await resolve_channels(session, source_id)
        if not channels:
            if post_id not in self._unrouted:
                self._unrouted.add(post_id)
                logger.info(
                    "Post %d is growing fast but source %d has no channels, will retry", post_id, source_id
                )
            result.skipped += 1
            return
        self._unrouted.discard(post_id)

        logger.info(
            "Post %d high dynamics: %.1f views/min over %.0f min (threshold %.1f)",
            post_id, window.average_rate, window.window_minutes, rate_threshold,
        )
        options = DeliveryOptions(
            kind="high_dynamics",
            growth_rate=window.average_rate,
            window_minutes=window.window_minutes,
            mark_forwarded=False,
        )
        fanout = await self._delivery.fanout(session, post, channels, options)
        if not fanout.any_delivered:
            result.errors += 1
            return

        post.was_high_dynamics = True
        post.high_dynamics_sent_at = utcnow()
        await session.commit()
        result.triggered += 1
