"""Fixed-rate task runner: three system tasks plus one job per active source."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedrank.config import settings
from feedrank.pipeline.high_dynamics import HighDynamicsSweep
from feedrank.pipeline.ingest import IngestionPipeline
from feedrank.pipeline.pending import PendingSweep
from feedrank.scheduler.jobs import Cadence, JobRegistry, cadence_for, diff_schedules
from feedrank.storage.repository import get_active_sources

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    active_jobs: int
    sources: int


async def run_every(
    name: str,
    interval_seconds: float,
    fn: Callable[[], Awaitable[Any]],
    immediate: bool = False,
) -> None:
    """Call `fn` at a fixed rate forever. Failures are logged, never raised."""
    loop = asyncio.get_running_loop()
    next_run = loop.time() + (0 if immediate else interval_seconds)
    while True:
        await asyncio.sleep(max(0.0, next_run - loop.time()))
        next_run += interval_seconds
        try:
            await fn()
        except Exception:
            logger.exception("Task %s failed", name)
        # a run that overran its slot starts the next one right away, once
        if next_run < loop.time():
            next_run = loop.time()


class Scheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: IngestionPipeline,
        pending: PendingSweep,
        high_dynamics: HighDynamicsSweep,
    ) -> None:
        self._session_factory = session_factory
        self._pipeline = pipeline
        self._pending = pending
        self._high_dynamics = high_dynamics
        self.registry = JobRegistry()
        self._system_tasks: list[asyncio.Task] = []
        self._in_flight: set[asyncio.Task] = set()
        self._reconcile_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return bool(self._system_tasks)

    def start(self) -> None:
        if self._system_tasks:
            return
        self._system_tasks = [
            asyncio.create_task(
                run_every(
                    "reconcile",
                    settings.reconcile_interval_minutes * 60,
                    self.reconcile,
                    immediate=True,
                ),
                name="reconcile",
            ),
            asyncio.create_task(
                run_every(
                    "pending-sweep",
                    settings.pending_sweep_interval_minutes * 60,
                    self._pending.run,
                ),
                name="pending-sweep",
            ),
            asyncio.create_task(
                run_every(
                    "high-dynamics-sweep",
                    settings.high_dynamics_interval_minutes * 60,
                    self._high_dynamics.run,
                ),
                name="high-dynamics-sweep",
            ),
        ]
        logger.info(
            "Scheduler started (reconcile=%dm, pending=%dm, high-dynamics=%dm)",
            settings.reconcile_interval_minutes,
            settings.pending_sweep_interval_minutes,
            settings.high_dynamics_interval_minutes,
        )

    async def stop(self) -> None:
        tasks = self._system_tasks + list(self._in_flight)
        self._system_tasks = []
        for task in tasks:
            task.cancel()
        await self.registry.clear()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def reconcile(self) -> ReconcileResult:
        """Bring the job registry in line with the active sources.

        Jobs whose cadence is unchanged are left running untouched.
        """
        async with self._reconcile_lock:
            async with self._session_factory() as session:
                sources = await get_active_sources(session)
                desired = {s.id: cadence_for(s.check_frequency_minutes) for s in sources}
                names = {s.id: s.name for s in sources}

            diff = diff_schedules(desired, await self.registry.snapshot())

            for source_id, cadence in {**diff.added, **diff.changed}.items():
                await self.registry.upsert(
                    source_id, cadence, lambda sid=source_id, c=cadence: self._source_job(sid, c)
                )
                logger.info(
                    "Scheduled source %s (#%d): %s", names[source_id], source_id, cadence.expression
                )
            for source_id in diff.removed:
                await self.registry.remove(source_id)
                logger.info("Removed job for source #%d", source_id)

            return ReconcileResult(active_jobs=len(self.registry), sources=len(sources))

    async def _source_job(self, source_id: int, cadence: Cadence) -> None:
        await run_every(
            f"source-{source_id}",
            cadence.interval_minutes * 60,
            lambda: self._run_sweep(source_id),
        )

    async def _run_sweep(self, source_id: int) -> None:
        # removing a job must not abort a sweep already in progress
        task = asyncio.create_task(self._pipeline.process_source(source_id))
        self._in_flight.add(task)
        task.add_done_callback(partial(self._sweep_done, source_id))
        await asyncio.wait({task})

    def _sweep_done(self, source_id: int, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sweep of source #%d failed", source_id, exc_info=exc)
