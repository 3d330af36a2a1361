import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from sync_engine.core.enums import JobStatus, JobType, Platform
from sync_engine.db.base import Base
from sync_engine.db.model.sync import SyncJob
from sync_engine.repository import job_repo


def _enqueue(db, shop_id="acme", platform=Platform.SHOPIFY, job_type=JobType.INCREMENTAL, metadata=None):
    job = job_repo.enqueue(db, shop_id, platform, job_type, metadata)
    assert job is not None
    return job


# ---------- enqueue ----------
def test_enqueue_accepts_capability_aliases(db):
    job = job_repo.enqueue(db, "acme", "COMMERCE", "incremental")
    assert job.platform == "SHOPIFY"
    assert job.job_type == "INCREMENTAL"
    assert job.status == JobStatus.QUEUED.value


def test_enqueue_duplicate_queued_job_returns_none(db):
    _enqueue(db)
    assert job_repo.enqueue(db, "acme", Platform.SHOPIFY, JobType.INCREMENTAL) is None
    # 不同 job_type 不冲突
    assert job_repo.enqueue(db, "acme", Platform.SHOPIFY, JobType.HISTORICAL_INIT) is not None


def test_enqueue_rejects_unknown_platform(db):
    with pytest.raises(ValueError):
        job_repo.enqueue(db, "acme", "TIKTOK", JobType.INCREMENTAL)


# ---------- next_queued / claim ----------
def test_next_queued_returns_oldest_without_claiming(db):
    first = _enqueue(db, shop_id="first")
    second = _enqueue(db, shop_id="second")
    db.execute(update(SyncJob).where(SyncJob.id == first.id).values(created_at=datetime(2026, 1, 1)))
    db.execute(update(SyncJob).where(SyncJob.id == second.id).values(created_at=datetime(2026, 1, 2)))
    db.commit()

    assert job_repo.next_queued(db) == first.id
    assert job_repo.next_queued(db) == first.id
    assert job_repo.get_job(db, first.id).status == JobStatus.QUEUED.value


def test_claim_has_exactly_one_winner(session_factory):
    with session_factory() as s:
        job_id = _enqueue(s).id

    with session_factory() as a, session_factory() as b:
        results = [job_repo.claim(a, job_id, worker_id="w-a"), job_repo.claim(b, job_id, worker_id="w-b")]

    assert results == [True, False]
    with session_factory() as s:
        job = job_repo.get_job(s, job_id)
        assert job.status == JobStatus.IN_PROGRESS.value
        assert job.claimed_by == "w-a"
        assert job.started_at is not None


# 多个 worker 同时抢同一个任务：文件库 + 每线程独立连接，只能有一个 True
def test_concurrent_claims_have_exactly_one_winner(tmp_path):
    eng = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'queue.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng, expire_on_commit=False, future=True)
    with factory() as s:
        job_id = _enqueue(s).id

    workers = 8
    barrier = threading.Barrier(workers)

    def attempt(i):
        with factory() as s:
            barrier.wait()
            return job_repo.claim(s, job_id, worker_id=f"w-{i}")

    try:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(attempt, range(workers)))

        assert results.count(True) == 1
        with factory() as s:
            job = job_repo.get_job(s, job_id)
            assert job.status == JobStatus.IN_PROGRESS.value
            assert job.claimed_by == f"w-{results.index(True)}"
    finally:
        eng.dispose()


def test_claim_unknown_job_is_false(db):
    assert job_repo.claim(db, "does-not-exist") is False


# ---------- complete ----------
def test_complete_only_applies_to_in_progress_and_is_monotonic(db):
    job = _enqueue(db)

    # QUEUED 不能直接结束
    assert job_repo.complete(db, job.id, JobStatus.SUCCEEDED, 3) is False

    assert job_repo.claim(db, job.id)
    assert job_repo.complete(db, job.id, JobStatus.SUCCEEDED, 3) is True
    # 第二次 complete 是 no-op，不会把 SUCCEEDED 改成 FAILED
    assert job_repo.complete(db, job.id, JobStatus.FAILED, error={"code": "X"}) is False

    db.expire_all()
    stored = job_repo.get_job(db, job.id)
    assert stored.status == JobStatus.SUCCEEDED.value
    assert stored.records_synced == 3
    assert stored.error is None
    assert stored.completed_at is not None
    # 已结束的任务不能被再次 claim
    assert job_repo.claim(db, job.id) is False


def test_complete_requires_terminal_status(db):
    job = _enqueue(db)
    job_repo.claim(db, job.id)
    with pytest.raises(ValueError):
        job_repo.complete(db, job.id, JobStatus.QUEUED)


def test_complete_failed_persists_error_payload(db):
    job = _enqueue(db)
    job_repo.claim(db, job.id)
    error = {"code": "API_ERROR", "message": "Shopify API error: 500 boom", "task": "shopify_bulk_start", "stack": "..."}
    assert job_repo.complete(db, job.id, JobStatus.FAILED, error=error)

    db.expire_all()
    stored = job_repo.get_job(db, job.id)
    assert stored.status == JobStatus.FAILED.value
    assert stored.error == error
    assert stored.records_synced is None


# ---------- follow-up ----------
def test_enqueue_follow_up_creates_historical_init_once(db):
    trigger = _enqueue(db, metadata={job_repo.FOLLOW_UP_FLAG: True})

    follow_up = job_repo.enqueue_follow_up(db, trigger)
    assert follow_up is not None
    assert follow_up.job_type == JobType.HISTORICAL_INIT.value
    assert follow_up.job_metadata == {"triggered_by": trigger.id}

    # 已有 QUEUED 的 HISTORICAL_INIT → 不再创建
    assert job_repo.enqueue_follow_up(db, trigger) is None

    # 变成 IN_PROGRESS 也算“活跃”
    job_repo.claim(db, follow_up.id)
    assert job_repo.enqueue_follow_up(db, trigger) is None


def test_enqueue_follow_up_requires_flag_and_incremental(db):
    plain = _enqueue(db, shop_id="plain")
    assert job_repo.enqueue_follow_up(db, plain) is None

    historical = _enqueue(db, shop_id="hist", job_type=JobType.HISTORICAL_REBUILD,
                          metadata={job_repo.FOLLOW_UP_FLAG: True})
    assert job_repo.enqueue_follow_up(db, historical) is None


# ---------- lease sweeper ----------
def test_reclaim_stale_fails_old_job_and_requeues_copy(db):
    now = datetime(2026, 3, 10, 12, 0, 0)
    stale = _enqueue(db, shop_id="stale", metadata={"source": "tick"})
    fresh = _enqueue(db, shop_id="fresh")
    job_repo.claim(db, stale.id, worker_id="dead-worker", now=now - timedelta(hours=3))
    job_repo.claim(db, fresh.id, worker_id="live-worker", now=now - timedelta(minutes=5))

    reclaimed = job_repo.reclaim_stale(db, timedelta(hours=2), now=now)

    assert len(reclaimed) == 1
    old_id, new_id = reclaimed[0]
    assert old_id == stale.id and new_id is not None

    db.expire_all()
    old = job_repo.get_job(db, old_id)
    assert old.status == JobStatus.FAILED.value
    assert old.error["code"] == job_repo.LEASE_EXPIRED_CODE
    assert old.error["claimed_by"] == "dead-worker"

    replacement = job_repo.get_job(db, new_id)
    assert replacement.status == JobStatus.QUEUED.value
    assert (replacement.shop_id, replacement.platform, replacement.job_type) == ("stale", "SHOPIFY", "INCREMENTAL")
    assert replacement.job_metadata == {"source": "tick", "requeued_from": stale.id}

    assert job_repo.get_job(db, fresh.id).status == JobStatus.IN_PROGRESS.value


def test_list_known_shop_ids_unions_sources(db, seed_credential):
    seed_credential("beta", "META")
    seed_credential("alpha", "SHOPIFY")
    assert job_repo.list_known_shop_ids(db) == ["alpha", "beta"]
