# sync_jobs database repository

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, union
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sync_engine.core.enums import JobStatus, JobType, Platform
from sync_engine.db.model.sync import Shop, ShopCredential, SyncCursor, SyncJob
from sync_engine.utils.clock import now_utc
from sync_engine.utils.serialization import to_jsonable

logger = logging.getLogger(__name__)

FOLLOW_UP_FLAG = "follow_up_historical"
LEASE_EXPIRED_CODE = "LEASE_EXPIRED"


# ---------- Query ----------
def get_job(db: Session, job_id: str) -> Optional[SyncJob]:
    return db.get(SyncJob, job_id)


def next_queued(db: Session) -> Optional[str]:
    """最早创建的 QUEUED 任务 id；只读，不抢占。"""
    stmt = (
        select(SyncJob.id)
        .where(SyncJob.status == JobStatus.QUEUED.value)
        .order_by(SyncJob.created_at.asc(), SyncJob.id.asc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def has_active_job(db: Session, shop_id: str, platform: Platform, job_type: JobType) -> bool:
    stmt = (
        select(SyncJob.id)
        .where(
            SyncJob.shop_id == shop_id,
            SyncJob.platform == platform.value,
            SyncJob.job_type == job_type.value,
            SyncJob.status.in_([JobStatus.QUEUED.value, JobStatus.IN_PROGRESS.value]),
        )
        .limit(1)
    )
    return db.scalars(stmt).first() is not None


def list_known_shop_ids(db: Session) -> List[str]:
    """shops / shop_credentials / sync_cursors 里出现过的 shop_id 并集（排序去重）。"""
    stmt = union(
        select(Shop.shop_id),
        select(ShopCredential.shop_id),
        select(SyncCursor.shop_id),
    )
    return sorted({row[0] for row in db.execute(stmt) if row[0]})


# ---------- Mutations ----------
def enqueue(
    db: Session,
    shop_id: str,
    platform: Platform | str,
    job_type: JobType | str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[SyncJob]:
    """
    插入一条 QUEUED 任务。
    同一 (shop, platform, job_type) 已有 QUEUED 时撞部分唯一索引 → 视为无害重复，返回 None。
    """
    platform = Platform.parse(platform)
    job_type = JobType.parse(job_type)

    job = SyncJob(
        shop_id=shop_id,
        platform=platform.value,
        job_type=job_type.value,
        status=JobStatus.QUEUED.value,
        job_metadata=to_jsonable(metadata) if metadata else None,
        created_at=now_utc(),
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "jobs.enqueue.duplicate shop_id=%s platform=%s job_type=%s",
            shop_id, platform.value, job_type.value,
        )
        return None

    logger.info(
        "jobs.enqueue.ok job_id=%s shop_id=%s platform=%s job_type=%s",
        job.id, shop_id, platform.value, job_type.value,
    )
    return job


def claim(db: Session, job_id: str, *, worker_id: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    """
    QUEUED → IN_PROGRESS 的条件更新；rowcount==1 才算抢到。
    并发下只有一个调用方能看到 True；False 表示“跳过”，不是错误。
    """
    stmt = (
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == JobStatus.QUEUED.value)
        .values(
            status=JobStatus.IN_PROGRESS.value,
            started_at=now or now_utc(),
            claimed_by=worker_id,
        )
        .execution_options(synchronize_session=False)
    )
    res = db.execute(stmt)
    db.commit()
    return bool(res.rowcount == 1)


def complete(
    db: Session,
    job_id: str,
    status: JobStatus | str,
    records_synced: Optional[int] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """
    终态写回：只对 IN_PROGRESS 生效，重复调用是 no-op（返回 False），不会改写已结束的任务。
    """
    status = JobStatus(status)
    if not status.is_terminal:
        raise ValueError(f"complete() requires a terminal status, got {status.value}")

    stmt = (
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == JobStatus.IN_PROGRESS.value)
        .values(
            status=status.value,
            records_synced=records_synced,
            error=to_jsonable(error) if error is not None else None,
            completed_at=now or now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    res = db.execute(stmt)
    db.commit()
    if not res.rowcount:
        logger.warning("jobs.complete.noop job_id=%s status=%s", job_id, status.value)
        return False
    return True


def enqueue_follow_up(db: Session, trigger_job: SyncJob) -> Optional[SyncJob]:
    """
    增量任务带 follow_up_historical 标记时，补一个 HISTORICAL_INIT；
    该 shop/platform 已有 QUEUED/IN_PROGRESS 的 HISTORICAL_INIT 则不重复创建。
    """
    if JobType.parse(trigger_job.job_type) is not JobType.INCREMENTAL:
        return None
    if not (trigger_job.job_metadata or {}).get(FOLLOW_UP_FLAG):
        return None

    platform = Platform.parse(trigger_job.platform)
    if has_active_job(db, trigger_job.shop_id, platform, JobType.HISTORICAL_INIT):
        logger.info(
            "jobs.follow_up.skip_active shop_id=%s platform=%s trigger=%s",
            trigger_job.shop_id, platform.value, trigger_job.id,
        )
        return None

    # 并发下两个 worker 可能同时通过上面的检查；部分唯一索引兜底
    return enqueue(
        db,
        trigger_job.shop_id,
        platform,
        JobType.HISTORICAL_INIT,
        {"triggered_by": trigger_job.id},
    )


def reclaim_stale(
    db: Session,
    max_staleness: timedelta,
    *,
    now: Optional[datetime] = None,
) -> List[Tuple[str, Optional[str]]]:
    """
    租约过期扫表：started_at 早于 now - max_staleness 的 IN_PROGRESS 任务
      1) 以 LEASE_EXPIRED 标记为 FAILED（状态单调，不回退）
      2) 插入一条同参数的新 QUEUED 任务（metadata.requeued_from 指向旧任务）
    返回 [(old_job_id, new_job_id | None)]
    """
    now = now or now_utc()
    cutoff = now - max_staleness
    stale_jobs = list(db.scalars(
        select(SyncJob).where(
            SyncJob.status == JobStatus.IN_PROGRESS.value,
            SyncJob.started_at < cutoff,
        ).order_by(SyncJob.started_at.asc())
        .execution_options(populate_existing=True)
    ))

    results: List[Tuple[str, Optional[str]]] = []
    for job in stale_jobs:
        job_id = job.id
        error = {
            "code": LEASE_EXPIRED_CODE,
            "message": f"job exceeded lease of {int(max_staleness.total_seconds())}s without completing",
            "task": "lease_sweeper",
            "claimed_by": job.claimed_by,
        }
        if not complete(db, job_id, JobStatus.FAILED, error=error, now=now):
            continue  # 期间已被原 worker 正常结束

        metadata = dict(job.job_metadata or {})
        metadata["requeued_from"] = job_id
        replacement = enqueue(db, job.shop_id, job.platform, job.job_type, metadata)
        logger.warning(
            "jobs.lease.expired job_id=%s shop_id=%s platform=%s replacement=%s",
            job_id, job.shop_id, job.platform, replacement.id if replacement else None,
        )
        results.append((job_id, replacement.id if replacement else None))
    return results
