# 同步任务接口：入队 / 查询 / 手动触发

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field

from sync_engine.api.v1.deps import get_job_queue, get_worker
from sync_engine.core.enums import JobType, Platform
from sync_engine.db.model.sync import SyncJob
from sync_engine.orchestration.worker import Worker
from sync_engine.services.job_queue import JobQueue
from sync_engine.utils.shop_id import normalize_shop_id

router = APIRouter(tags=["jobs"])


class JobCreate(BaseModel):
    shop_id: str = Field(..., min_length=1)
    platform: str = Field(..., description="SHOPIFY | META（或 COMMERCE | ADS）")
    job_type: str = Field(..., description="HISTORICAL_INIT | HISTORICAL_REBUILD | INCREMENTAL")
    metadata: Optional[Dict[str, Any]] = None


class JobItem(BaseModel):
    id: str
    shop_id: str
    platform: str
    job_type: str
    status: str
    records_synced: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    claimed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SyncTrigger(BaseModel):
    job_id: str = Field(..., min_length=1)


@router.post("/jobs")
def create_job(body: JobCreate, queue: JobQueue = Depends(get_job_queue)):
    try:
        platform = Platform.parse(body.platform)
        job_type = JobType.parse(body.job_type)
        shop_id = normalize_shop_id(body.shop_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    job = queue.enqueue(shop_id, platform, job_type, body.metadata)
    if job is None:
        # 同一 (shop, platform, job_type) 已有 QUEUED
        return {"job": None, "duplicate": True}
    return {"job": _to_item(job), "duplicate": False}


@router.get("/jobs/{job_id}", response_model=JobItem)
def get_job(job_id: str = Path(...), queue: JobQueue = Depends(get_job_queue)) -> JobItem:
    job = queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _to_item(job)


"""
手动触发：在请求线程里同步跑完驱动（适合调试 / 运维补跑单个任务）
    - claim 失败（已被 worker 抢走 / 不存在 / 已结束）→ 409
"""
@router.post("/sync")
def trigger_sync(body: SyncTrigger, worker: Worker = Depends(get_worker)):
    if not worker.queue.claim(body.job_id, worker_id=worker.worker_id):
        raise HTTPException(status_code=409, detail="Job already claimed or not found")

    status = worker.process(body.job_id)
    job = worker.queue.get(body.job_id)
    return {
        "job_id": body.job_id,
        "status": status.value,
        "records_synced": job.records_synced if job is not None else None,
        "error": job.error if job is not None else None,
    }


def _to_item(job: SyncJob) -> JobItem:
    return JobItem(
        id=job.id,
        shop_id=job.shop_id,
        platform=job.platform,
        job_type=job.job_type,
        status=job.status,
        records_synced=job.records_synced,
        error=job.error,
        metadata=job.job_metadata,
        claimed_by=job.claimed_by,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )
