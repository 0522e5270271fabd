"""FeedRankCore: the object the process builds once and everything else calls.

It owns the feed client, the channel transport, the shared HTTP client and
the scheduler, and exposes the operations the control API needs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import pydantic
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedrank.config import settings
from feedrank.delivery.base import ChannelTransport
from feedrank.delivery.engine import DeliveryEngine
from feedrank.errors import (
    PostNotFoundError,
    SourceNotFoundError,
    ValidationError,
)
from feedrank.ingestion.base import FeedSource
from feedrank.pipeline.high_dynamics import HighDynamicsResult, HighDynamicsSweep
from feedrank.pipeline.ingest import IngestionPipeline, SweepResult
from feedrank.pipeline.pending import PendingResult, PendingSweep
from feedrank.scheduler.service import ReconcileResult, Scheduler
from feedrank.scoring import stop_words
from feedrank.scoring.models import ThresholdReport, ThresholdRequest, ThresholdStats
from feedrank.storage.models import Channel, Mapping, Source
from feedrank.storage.repository import (
    get_channel_by_chat_id,
    get_post,
    get_source,
    save_channel,
    save_mapping,
    save_source,
    source_exists_for_external_id,
)
from feedrank.storage.schemas import MappingConfig, SourceConfig

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


def validate(model: type[ModelT], data: Any) -> ModelT:
    """Parse boundary input, turning pydantic errors into our ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


@dataclass
class StatusChange:
    post_id: int
    status: str
    changed: bool
    forwarded: bool = False


class FeedRankCore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: FeedSource,
        transport: ChannelTransport,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._session_factory = session_factory
        self.feed = feed
        self.transport = transport
        self._http = http_client

        self.delivery = DeliveryEngine(transport, feed, http_client)
        self.pipeline = IngestionPipeline(session_factory, feed, self.delivery)
        self.pending = PendingSweep(session_factory, self.delivery)
        self.high_dynamics = HighDynamicsSweep(session_factory, self.delivery)
        self.scheduler = Scheduler(
            session_factory, self.pipeline, self.pending, self.high_dynamics
        )

    @classmethod
    def from_settings(cls) -> "FeedRankCore":
        from feedrank.delivery.telegram_bot import TelegramTransport
        from feedrank.ingestion.vk import VkFeedSource
        from feedrank.storage.database import async_session

        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        return cls(
            async_session,
            VkFeedSource(client=http_client),
            TelegramTransport(),
            http_client,
        )

    # --- lifecycle ---

    async def start(self, run_scheduler: bool = True) -> None:
        await self.feed.init()
        await self.transport.init()
        if run_scheduler:
            self.scheduler.start()
        logger.info("FeedRank core started")

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.feed.shutdown()
        await self.transport.shutdown()
        await self._http.aclose()
        logger.info("FeedRank core stopped")

    # --- sweeps ---

    async def trigger_immediate_sweep(self, source_id: int) -> SweepResult:
        logger.info("On-demand sweep requested for source %d", source_id)
        return await self.pipeline.process_source(source_id)

    async def run_pending_sweep(self) -> PendingResult:
        return await self.pending.run()

    async def run_high_dynamics_sweep(self) -> HighDynamicsResult:
        return await self.high_dynamics.run()

    async def reconcile_schedules(self) -> ReconcileResult:
        return await self.scheduler.reconcile()

    # --- thresholds ---

    async def recalculate_threshold(
        self,
        source_id: int,
        method: str = "statistical",
        sample_size: int = 200,
        multiplier: float | None = None,
    ) -> ThresholdStats:
        request = validate(
            ThresholdRequest,
            {"method": method, "sample_size": sample_size, "multiplier": multiplier},
        )
        async with self._session_factory() as session:
            source = await self._require_source(session, source_id)
            return await self.pipeline.recalculate_threshold(
                session, source, request.method, request.sample_size, request.multiplier
            )

    async def get_threshold_stats(self, source_id: int) -> ThresholdReport:
        async with self._session_factory() as session:
            source = await self._require_source(session, source_id)
            return ThresholdReport(
                source_id=source.id,
                threshold_type=source.threshold_type,
                effective_threshold=source.effective_threshold,
                calculated_threshold=source.calculated_threshold or 0,
                manual_threshold=source.manual_threshold or 0,
                statistical_multiplier=source.statistical_multiplier,
                stats=ThresholdStats.model_validate(source.threshold_stats)
                if source.threshold_stats
                else None,
            )

    # --- posts ---

    async def set_post_status(self, post_id: int, status: str) -> StatusChange:
        """Move a post to `status`. Approving a post forwards it right away."""
        async with self._session_factory() as session:
            post = await get_post(session, post_id)
            if post is None:
                raise PostNotFoundError(f"Post {post_id} not found")
            changed = post.transition_to(status)
            await session.commit()
            logger.info("Post %d status -> %s", post_id, post.status)

            forwarded = False
            if changed and status == "approved":
                forwarded = await self.pending.forward(session, post_id)
            return StatusChange(
                post_id=post_id, status=post.status, changed=changed, forwarded=forwarded
            )

    # --- sources, channels, mappings ---

    async def resolve_source(self, name: str) -> str:
        return await self.feed.resolve_identifier(name)

    async def add_source(self, config: SourceConfig | dict[str, Any]) -> Source:
        cfg = validate(SourceConfig, config)
        async with self._session_factory() as session:
            if await source_exists_for_external_id(session, cfg.external_id):
                raise ValidationError(f"Source {cfg.external_id} is already registered")
            source = Source(**cfg.model_dump(exclude={"high_dynamics"}))
            source.high_dynamics = cfg.high_dynamics
            return await save_source(session, source)

    async def resolve_channel(self, identifier: str) -> Channel:
        """Look the channel up through the transport and upsert it locally."""
        info = await self.transport.resolve_channel_info(identifier)
        async with self._session_factory() as session:
            channel = await get_channel_by_chat_id(session, info.id)
            if channel is None:
                channel = Channel(chat_id=info.id)
            channel.title = info.title
            channel.username = info.username
            return await save_channel(session, channel)

    async def add_mapping(self, config: MappingConfig | dict[str, Any]) -> Mapping:
        cfg = validate(MappingConfig, config)
        async with self._session_factory() as session:
            return await save_mapping(session, Mapping(**cfg.model_dump()))

    # --- stop words ---

    async def get_global_stop_words(self) -> list[str]:
        async with self._session_factory() as session:
            return await stop_words.get_global_stop_words(session)

    async def set_global_stop_words(self, words: Any) -> list[str]:
        async with self._session_factory() as session:
            return await stop_words.set_global_stop_words(session, words)

    async def _require_source(self, session: AsyncSession, source_id: int) -> Source:
        source = await get_source(session, source_id)
        if source is None:
            raise SourceNotFoundError(f"Source {source_id} not found")
        return source
