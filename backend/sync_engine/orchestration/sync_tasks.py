from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List

from celery import shared_task

from sync_engine.core.config import settings
from sync_engine.core.enums import JobType
from sync_engine.core.errors import CredentialError
from sync_engine.db.session import SessionLocal
from sync_engine.orchestration.worker import build_worker
from sync_engine.services.credential_store import CredentialStore
from sync_engine.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


"""
  调试开关：True 时 tick 入队的任务在当前进程内直接执行，不再投递 run_sync_job。
"""
def _inline_tasks_enabled() -> bool:
    return bool(getattr(settings, "SYNC_TASKS_INLINE", False))


def ensure_incremental_jobs(queue: JobQueue, credentials: CredentialStore) -> List[str]:
    """
    每个已知店铺 × 有有效凭证的平台 → 入队一条 INCREMENTAL。
    已有 QUEUED 的组合由部分唯一索引挡掉（enqueue 返回 None），不算错误。
    """
    created: List[str] = []
    for shop_id in queue.known_shop_ids():
        try:
            platforms = credentials.list_platforms_for_shop(shop_id)
        except CredentialError as e:
            logger.warning("tick.shop.skip shop_id=%s code=%s", shop_id, e.code)
            continue
        for platform in platforms:
            job = queue.enqueue(shop_id, platform, JobType.INCREMENTAL)
            if job is not None:
                created.append(job.id)
    logger.info("tick.incremental.done created=%s", len(created))
    return created


"""
  Celery 入口：执行指定任务（先 claim，抢不到就跳过）
"""
@shared_task(name="sync_engine.orchestration.sync_tasks.run_sync_job")
def run_sync_job(job_id: str) -> Dict[str, Any]:
    worker = build_worker()
    if not worker.queue.claim(job_id, worker_id=worker.worker_id):
        logger.info("tasks.run_sync_job.skip job_id=%s reason=claim_lost", job_id)
        return {"job_id": job_id, "status": "skipped"}
    status = worker.process(job_id)
    return {"job_id": job_id, "status": status.value}


@shared_task(name="sync_engine.orchestration.sync_tasks.tick_incremental_jobs")
def tick_incremental_jobs() -> Dict[str, Any]:
    queue = JobQueue(SessionLocal)
    created = ensure_incremental_jobs(queue, CredentialStore(SessionLocal))

    if _inline_tasks_enabled():
        for job_id in created:
            run_sync_job(job_id)
    else:
        for job_id in created:
            run_sync_job.apply_async(args=[job_id])
    return {"status": "ok", "created": created}


@shared_task(name="sync_engine.orchestration.sync_tasks.sweep_stale_jobs")
def sweep_stale_jobs() -> Dict[str, Any]:
    queue = JobQueue(SessionLocal)
    reclaimed = queue.reclaim_stale(timedelta(seconds=settings.WORKER_MAX_STALENESS_SECONDS))
    if reclaimed:
        logger.warning("sweeper.reclaimed count=%s jobs=%s", len(reclaimed), reclaimed)
    return {"status": "ok", "reclaimed": [{"failed": old, "requeued": new} for old, new in reclaimed]}
