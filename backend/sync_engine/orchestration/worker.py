"""
Worker 轮询主循环（单线程，可多进程并行跑）

    next_queued → claim → CredentialStore.get → DriverRegistry.get(platform).sync → complete
      - 队列为空：sleep WORKER_POLL_INTERVAL_MS 再来
      - claim 失败（被别的 worker 抢走）：不 sleep，直接下一轮
      - 驱动抛出的任何异常都写进 job.error 并标 FAILED，循环继续
    启动时连不上队列库 → 进程退出码 1，交给 supervisor 重启

运行：
    python -m sync_engine.orchestration.worker
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys
import time
from typing import Callable, List, Optional

from sync_engine.core.config import settings
from sync_engine.core.enums import JobStatus, JobType, Platform
from sync_engine.core.errors import ConfigError, CredentialError, to_error_payload
from sync_engine.core.logging import configure_logging
from sync_engine.db.model.sync import SyncJob
from sync_engine.db.session import SessionFactory, SessionLocal
from sync_engine.orchestration.sync.base import SyncContext
from sync_engine.orchestration.sync.registry import DriverRegistry, build_default_registry
from sync_engine.services.credential_store import CredentialStore
from sync_engine.services.job_queue import JobQueue
from sync_engine.utils.shop_id import normalize_shop_id

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return settings.WORKER_ID or f"{socket.gethostname()}:{os.getpid()}"


class Worker:

    def __init__(
        self,
        queue: JobQueue,
        credentials: CredentialStore,
        registry: DriverRegistry,
        *,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: Optional[str] = None,
    ) -> None:
        self.queue = queue
        self.credentials = credentials
        self.registry = registry
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_MS / 1000.0
        self.sleep = sleep
        self.worker_id = worker_id or default_worker_id()

    # ---------------- loop ----------------

    def run_once(self) -> bool:
        """
        跑一轮；返回 True 表示本轮“有事可做”（处理了任务或抢占失败），调用方应立即进入下一轮。
        """
        job_id = self.queue.next_queued()
        if job_id is None:
            return False

        if not self.queue.claim(job_id, worker_id=self.worker_id):
            logger.info("worker.job.claim_lost job_id=%s worker=%s", job_id, self.worker_id)
            return True

        self.process(job_id)
        return True

    def run_forever(self, *, max_iterations: Optional[int] = None) -> None:
        logger.info("worker.loop.start worker=%s poll_interval=%s platforms=%s",
            self.worker_id, self.poll_interval, [p.value for p in self.registry.platforms()])
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            try:
                busy = self.run_once()
            except Exception:
                # 队列库短暂不可用等：记下来，按空闲处理
                logger.exception("worker.loop.error worker=%s", self.worker_id)
                busy = False
            if not busy:
                self.sleep(self.poll_interval)

    # ---------------- one job ----------------

    def process(self, job_id: str) -> JobStatus:
        """执行一个已被本 worker claim 的任务，写回终态。"""
        job = self.queue.get(job_id)
        if job is None:
            logger.error("worker.job.missing job_id=%s", job_id)
            return JobStatus.FAILED

        logger.info("worker.job.claimed job_id=%s shop_id=%s platform=%s job_type=%s worker=%s",
            job.id, job.shop_id, job.platform, job.job_type, self.worker_id)
        started = time.perf_counter()

        try:
            result = self._run_driver(job)
        except CredentialError as exc:
            logger.warning("worker.job.credential_error job_id=%s shop_id=%s platform=%s code=%s",
                job.id, job.shop_id, job.platform, exc.code)
            self.queue.complete(job.id, JobStatus.FAILED, error=to_error_payload(exc))
            return JobStatus.FAILED
        except Exception as exc:
            logger.exception("worker.job.failed job_id=%s shop_id=%s platform=%s", job.id, job.shop_id, job.platform)
            self.queue.complete(job.id, JobStatus.FAILED, error=to_error_payload(exc, task="sync_job"))
            return JobStatus.FAILED

        self.queue.complete(job.id, JobStatus.SUCCEEDED, records_synced=result.records_synced)
        logger.info("worker.job.succeeded job_id=%s shop_id=%s platform=%s records=%s elapsed_ms=%s",
            job.id, job.shop_id, job.platform, result.records_synced, int((time.perf_counter() - started) * 1000))

        follow_up = self.queue.enqueue_follow_up(job)
        if follow_up is not None:
            logger.info("worker.job.follow_up job_id=%s follow_up_id=%s", job.id, follow_up.id)
        return JobStatus.SUCCEEDED

    def _run_driver(self, job: SyncJob):
        try:
            canonical = normalize_shop_id(job.shop_id)
        except ValueError as e:
            canonical = None
            detail = str(e)
        else:
            detail = f"expected {canonical!r}"
        if canonical != job.shop_id:
            raise ConfigError(
                f"Job {job.id} has non-canonical shop_id {job.shop_id!r}: {detail}",
                code="NON_CANONICAL_SHOP_ID",
                task="worker_dispatch",
            )

        platform = Platform.parse(job.platform)
        driver = self.registry.get(platform)
        credential = self.credentials.get(job.shop_id, platform)
        ctx = SyncContext(
            job_id=job.id,
            shop_id=job.shop_id,
            platform=platform,
            job_type=JobType.parse(job.job_type),
            credential=credential,
            metadata=dict(job.job_metadata or {}),
        )
        return driver.sync(ctx)


def build_worker(session_factory: Optional[SessionFactory] = None, **kwargs) -> Worker:
    factory = session_factory or SessionLocal
    return Worker(
        JobQueue(factory),
        CredentialStore(factory),
        build_default_registry(factory),
        **kwargs,
    )


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    parser = argparse.ArgumentParser(description="Poll sync_jobs and run platform syncs")
    parser.add_argument("--once", action="store_true", help="process at most one job and exit")
    parser.add_argument("--worker-id", default=None)
    args = parser.parse_args(argv)

    worker = build_worker(worker_id=args.worker_id)
    try:
        worker.queue.ping()
    except Exception:
        logger.exception("worker.startup.queue_unreachable")
        return 1

    if args.once:
        worker.run_once()
        return 0
    worker.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
