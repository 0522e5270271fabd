"""Source job cadences, the job registry and the reconciliation diff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping

from feedrank.scoring.threshold import round_half_up

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cadence:
    expression: str  # cron notation, for logs and the control API
    interval_minutes: int


HOURLY = Cadence("0 * * * *", 60)


def cadence_for(minutes: int | None) -> Cadence:
    """Map a source's check frequency onto a job cadence.

    Under an hour runs every N minutes, whole hours run every N hours and
    anything else is rounded to the nearest hour. Zero, negative or missing
    values fall back to hourly.
    """
    if not minutes or minutes <= 0:
        return HOURLY
    if minutes < 60:
        return Cadence(f"*/{minutes} * * * *", minutes)
    if minutes == 60:
        return HOURLY
    if minutes % 60 == 0:
        hours = minutes // 60
    else:
        hours = round_half_up(minutes / 60)
    if hours <= 1:
        return HOURLY
    return Cadence(f"0 */{hours} * * *", hours * 60)


@dataclass
class ScheduleDiff:
    added: dict[int, Cadence] = field(default_factory=dict)
    changed: dict[int, Cadence] = field(default_factory=dict)
    removed: list[int] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.changed or self.removed)


def diff_schedules(
    desired: Mapping[int, Cadence], current: Mapping[int, Cadence]
) -> ScheduleDiff:
    diff = ScheduleDiff()
    for source_id, cadence in desired.items():
        existing = current.get(source_id)
        if existing is None:
            diff.added[source_id] = cadence
        elif existing != cadence:
            diff.changed[source_id] = cadence
    diff.removed = sorted(sid for sid in current if sid not in desired)
    return diff


@dataclass
class SourceJob:
    source_id: int
    cadence: Cadence
    task: asyncio.Task


class JobRegistry:
    """source_id -> running job, guarded by a lock."""

    def __init__(self) -> None:
        self._jobs: dict[int, SourceJob] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, source_id: int) -> bool:
        return source_id in self._jobs

    async def upsert(
        self,
        source_id: int,
        cadence: Cadence,
        factory: Callable[[], Coroutine[Any, Any, None]],
    ) -> SourceJob:
        """Start a job for the source, replacing (and cancelling) any existing one."""
        async with self._lock:
            existing = self._jobs.pop(source_id, None)
            if existing is not None:
                existing.task.cancel()
            task = asyncio.create_task(factory(), name=f"source-{source_id}")
            job = SourceJob(source_id=source_id, cadence=cadence, task=task)
            self._jobs[source_id] = job
            return job

    async def remove(self, source_id: int) -> bool:
        async with self._lock:
            job = self._jobs.pop(source_id, None)
        if job is None:
            return False
        job.task.cancel()
        return True

    async def snapshot(self) -> dict[int, Cadence]:
        async with self._lock:
            return {sid: job.cadence for sid, job in self._jobs.items()}

    async def clear(self) -> None:
        async with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            job.task.cancel()
        await asyncio.gather(*(job.task for job in jobs), return_exceptions=True)
