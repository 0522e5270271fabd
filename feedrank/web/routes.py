from dataclasses import asdict
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from feedrank.service import FeedRankCore
from feedrank.web.dependencies import get_core

router = APIRouter(prefix="/api")


class ThresholdBody(BaseModel):
    # ranges are checked by the core so the error shape stays the same
    method: str = "statistical"
    sample_size: int = 200
    multiplier: float | None = None


class StatusBody(BaseModel):
    status: Literal["pending", "approved", "rejected"]


@router.post("/sources/{source_id}/sweep")
async def trigger_sweep(source_id: int, core: FeedRankCore = Depends(get_core)):
    result = await core.trigger_immediate_sweep(source_id)
    return asdict(result)


@router.post("/sources/{source_id}/threshold")
async def recalculate_threshold(
    source_id: int, body: ThresholdBody, core: FeedRankCore = Depends(get_core)
):
    stats = await core.recalculate_threshold(
        source_id, body.method, body.sample_size, body.multiplier
    )
    return {"source_id": source_id, "threshold": stats.threshold, "stats": stats.model_dump()}


@router.get("/sources/{source_id}/threshold")
async def threshold_stats(source_id: int, core: FeedRankCore = Depends(get_core)):
    report = await core.get_threshold_stats(source_id)
    return report.model_dump()


@router.post("/schedules/reconcile")
async def reconcile_schedules(core: FeedRankCore = Depends(get_core)):
    result = await core.reconcile_schedules()
    return asdict(result)


@router.put("/posts/{post_id}/status")
async def set_post_status(
    post_id: int, body: StatusBody, core: FeedRankCore = Depends(get_core)
):
    change = await core.set_post_status(post_id, body.status)
    return asdict(change)
