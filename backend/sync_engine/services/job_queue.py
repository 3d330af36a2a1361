# JobQueue：对 job_repo 的薄封装，每个操作独立开一个会话（session 工厂由调用方注入）

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text

from sync_engine.core.enums import JobStatus, JobType, Platform
from sync_engine.db.model.sync import SyncJob
from sync_engine.db.session import SessionFactory, session_scope
from sync_engine.repository import job_repo

logger = logging.getLogger(__name__)


class JobQueue:

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def ping(self) -> None:
        """启动探活：连不上队列库直接抛异常。"""
        with session_scope(self._session_factory) as db:
            db.execute(text("SELECT 1"))

    def get(self, job_id: str) -> Optional[SyncJob]:
        with session_scope(self._session_factory) as db:
            return job_repo.get_job(db, job_id)

    def next_queued(self) -> Optional[str]:
        with session_scope(self._session_factory) as db:
            return job_repo.next_queued(db)

    def claim(self, job_id: str, *, worker_id: Optional[str] = None) -> bool:
        with session_scope(self._session_factory) as db:
            return job_repo.claim(db, job_id, worker_id=worker_id)

    def complete(
        self,
        job_id: str,
        status: JobStatus,
        records_synced: Optional[int] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with session_scope(self._session_factory) as db:
            return job_repo.complete(db, job_id, status, records_synced, error)

    def enqueue(
        self,
        shop_id: str,
        platform: Platform | str,
        job_type: JobType | str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SyncJob]:
        with session_scope(self._session_factory) as db:
            return job_repo.enqueue(db, shop_id, platform, job_type, metadata)

    def enqueue_follow_up(self, trigger_job: SyncJob) -> Optional[SyncJob]:
        with session_scope(self._session_factory) as db:
            return job_repo.enqueue_follow_up(db, trigger_job)

    def has_active_job(self, shop_id: str, platform: Platform, job_type: JobType) -> bool:
        with session_scope(self._session_factory) as db:
            return job_repo.has_active_job(db, shop_id, platform, job_type)

    def known_shop_ids(self) -> List[str]:
        with session_scope(self._session_factory) as db:
            return job_repo.list_known_shop_ids(db)

    def reclaim_stale(
        self,
        max_staleness: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> List[Tuple[str, Optional[str]]]:
        with session_scope(self._session_factory) as db:
            return job_repo.reclaim_stale(db, max_staleness, now=now)
