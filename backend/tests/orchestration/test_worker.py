from types import SimpleNamespace

import pytest

from sync_engine.core.enums import JobStatus, JobType, Platform
from sync_engine.orchestration import worker as worker_module
from sync_engine.orchestration.sync.base import SyncResult
from sync_engine.orchestration.sync.registry import DriverRegistry
from sync_engine.orchestration.worker import Worker
from sync_engine.services.credential_store import CredentialStore
from sync_engine.services.job_queue import JobQueue


class FakeDriver:
    platform = Platform.SHOPIFY

    def __init__(self, records=5, error=None):
        self.records = records
        self.error = error
        self.contexts = []

    def sync(self, ctx):
        self.contexts.append(ctx)
        if self.error is not None:
            raise self.error
        return SyncResult(records_synced=self.records)


@pytest.fixture
def make_worker(session_factory, fake_sleep):
    def _make(driver):
        return Worker(
            JobQueue(session_factory),
            CredentialStore(session_factory),
            DriverRegistry([driver]),
            poll_interval=0.25,
            sleep=fake_sleep,
            worker_id="w-test",
        )

    return _make


def test_run_once_with_empty_queue(make_worker):
    assert make_worker(FakeDriver()).run_once() is False


def test_run_forever_sleeps_when_idle(make_worker, fake_sleep):
    make_worker(FakeDriver()).run_forever(max_iterations=2)
    assert fake_sleep.calls == [0.25, 0.25]


# 方法 1：成功 → SUCCEEDED + records_synced，驱动拿到解析好的凭证与 metadata
def test_successful_job(make_worker, seed_credential):
    seed_credential("acme", "SHOPIFY", token="shpat_live")
    driver = FakeDriver(records=8)
    worker = make_worker(driver)
    job = worker.queue.enqueue("acme", Platform.SHOPIFY, JobType.INCREMENTAL, {"note": "manual"})

    assert worker.run_once() is True

    saved = worker.queue.get(job.id)
    assert saved.status == JobStatus.SUCCEEDED.value
    assert saved.records_synced == 8
    assert saved.claimed_by == "w-test"
    ctx = driver.contexts[0]
    assert ctx.credential.access_token == "shpat_live"
    assert ctx.credential.shop.domain == "acme.myshopify.com"
    assert ctx.metadata == {"note": "manual"}
    assert ctx.job_type is JobType.INCREMENTAL


def test_success_enqueues_historical_follow_up(make_worker, seed_credential):
    seed_credential("acme", "SHOPIFY")
    worker = make_worker(FakeDriver())
    worker.queue.enqueue("acme", "SHOPIFY", "INCREMENTAL", {"follow_up_historical": True})

    worker.run_once()

    follow_up_id = worker.queue.next_queued()
    follow_up = worker.queue.get(follow_up_id)
    assert follow_up.job_type == JobType.HISTORICAL_INIT.value
    assert follow_up.status == JobStatus.QUEUED.value


def test_claim_lost_skips_job(make_worker, session_factory, monkeypatch):
    worker = make_worker(FakeDriver())
    job = worker.queue.enqueue("acme", "SHOPIFY", "INCREMENTAL")
    # 另一个 worker 抢先 claim
    JobQueue(session_factory).claim(job.id, worker_id="other")

    monkeypatch.setattr(worker.queue, "next_queued", lambda: job.id)
    assert worker.run_once() is True
    assert worker.queue.get(job.id).claimed_by == "other"


# 方法 2：驱动异常 → FAILED，error 结构完整，循环不中断
def test_driver_exception_is_recorded(make_worker, seed_credential):
    seed_credential("acme", "SHOPIFY")
    worker = make_worker(FakeDriver(error=RuntimeError("upstream exploded")))
    job = worker.queue.enqueue("acme", "SHOPIFY", "INCREMENTAL")

    assert worker.run_once() is True

    saved = worker.queue.get(job.id)
    assert saved.status == JobStatus.FAILED.value
    assert saved.error["code"] == "RuntimeError"
    assert saved.error["message"] == "upstream exploded"
    assert saved.error["task"] == "sync_job"
    assert saved.error["service"] == "sync-worker"
    assert "RuntimeError" in saved.error["stack"]


def test_missing_credential_fails_job(make_worker):
    driver = FakeDriver()
    worker = make_worker(driver)
    job = worker.queue.enqueue("acme", "SHOPIFY", "INCREMENTAL")

    assert worker.run_once() is True

    saved = worker.queue.get(job.id)
    assert saved.status == JobStatus.FAILED.value
    assert saved.error["code"] == "CREDENTIAL_NOT_FOUND"
    assert saved.error["task"] == "credential_lookup"
    assert driver.contexts == []


def test_non_canonical_shop_id_is_rejected(make_worker, seed_credential):
    seed_credential("acme", "SHOPIFY")
    driver = FakeDriver()
    worker = make_worker(driver)
    job = worker.queue.enqueue("Acme.myshopify.com", "SHOPIFY", "INCREMENTAL")

    worker.run_once()

    saved = worker.queue.get(job.id)
    assert saved.status == JobStatus.FAILED.value
    assert saved.error["code"] == "NON_CANONICAL_SHOP_ID"
    assert saved.error["task"] == "worker_dispatch"
    assert driver.contexts == []


def test_unknown_platform_driver_fails_job(make_worker, seed_credential):
    seed_credential("acme", "META")
    worker = make_worker(FakeDriver())
    job = worker.queue.enqueue("acme", "META", "INCREMENTAL")

    worker.run_once()

    saved = worker.queue.get(job.id)
    assert saved.error["code"] == "UNKNOWN_PLATFORM"


def test_main_exits_1_when_queue_unreachable(monkeypatch):
    def _ping():
        raise ConnectionError("db down")

    fake = SimpleNamespace(queue=SimpleNamespace(ping=_ping))
    monkeypatch.setattr(worker_module, "build_worker", lambda **kwargs: fake)

    assert worker_module.main(["--once"]) == 1


def test_main_once_runs_single_iteration(monkeypatch):
    calls = []
    fake = SimpleNamespace(queue=SimpleNamespace(ping=lambda: None), run_once=lambda: calls.append("once"))
    monkeypatch.setattr(worker_module, "build_worker", lambda **kwargs: fake)

    assert worker_module.main(["--once", "--worker-id", "w-1"]) == 0
    assert calls == ["once"]
