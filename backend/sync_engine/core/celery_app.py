# Celery：定时入队增量任务 + 租约扫表；同步任务本身也可以由 Celery worker 执行

from celery import Celery
from kombu import Exchange, Queue
from sync_engine.core.config import settings
from sync_engine.core.logging import configure_logging

configure_logging()


'''
初始化 Celery 应用/实例
   - Beat: 1 台（只负责 tick / sweep 两个定时任务）
   - 真正的同步由轮询 worker 进程（python -m sync_engine.orchestration.worker）或 run_sync_job 执行
'''
celery_app = Celery(
    "sync_engine",
    broker=settings.CELERY_BROKER_URL,          # 队列位置 (Redis)
    backend=settings.CELERY_RESULT_BACKEND,     # 结果存储 (Redis)
    include=[
        "sync_engine.orchestration.sync_tasks",
    ],
)


celery_app.conf.update(
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,                             # 内部统一 UTC
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_track_started=True,
    broker_connection_retry_on_startup=True,
    # === 容错 ===
    worker_prefetch_multiplier=1,    # 同步任务耗时长，一次只取一个
    task_acks_late=True,             # worker crash 后任务回队列；claim 的条件更新保证不会重复执行
    broker_heartbeat=30,
    broker_pool_limit=10,
)


celery_app.conf.task_queues = (
    Queue("default", Exchange("default"), routing_key="default"),
    Queue("orchestrator", Exchange("orchestrator"), routing_key="orchestrator"),
)


celery_app.conf.task_routes = {
    "sync_engine.orchestration.sync_tasks.run_sync_job": {"queue": "orchestrator"},
    "sync_engine.orchestration.sync_tasks.tick_incremental_jobs": {"queue": "orchestrator"},
    "sync_engine.orchestration.sync_tasks.sweep_stale_jobs": {"queue": "orchestrator"},
}


celery_app.conf.beat_schedule = {

    # 每 SCHEDULER_TICK_SEC 秒给每个 (shop, 有效凭证的平台) 补一条 INCREMENTAL；重复入队无害
    "incremental-sync-tick": {
        "task": "sync_engine.orchestration.sync_tasks.tick_incremental_jobs",
        "schedule": settings.SCHEDULER_TICK_SEC,
    },

    # 租约扫表：IN_PROGRESS 超过 WORKER_MAX_STALENESS_SECONDS → FAILED + 重新入队
    "stale-job-sweeper": {
        "task": "sync_engine.orchestration.sync_tasks.sweep_stale_jobs",
        "schedule": settings.STALE_SWEEP_SEC,
    },
}
