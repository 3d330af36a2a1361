# FastAPI 依赖：测试里用 app.dependency_overrides 换成 SQLite / 假驱动

from sync_engine.db.session import SessionLocal
from sync_engine.orchestration.worker import Worker, build_worker
from sync_engine.services.job_queue import JobQueue


def get_job_queue() -> JobQueue:
    return JobQueue(SessionLocal)


def get_worker() -> Worker:
    return build_worker(SessionLocal)
