from datetime import date, datetime

import pytest
from sqlalchemy import select

from sync_engine.core.enums import JobType, Platform
from sync_engine.core.errors import ApiError, ConfigError, PaginationTruncated
from sync_engine.db.model.warehouse import AdEntity, AdInsightDaily
from sync_engine.orchestration.sync.ads_driver import WATERMARK_KEY, AdsDriver, chunk_date_range
from sync_engine.orchestration.sync.base import SyncContext
from sync_engine.services.credential_store import Credential, ShopInfo
from sync_engine.services.cursor_store import CursorStore
from sync_engine.services.staging import StagingSink

BREAKDOWNS = {
    None: (),
    "device": ("device_platform",),
    "geo": ("country",),
}


class FakeMetaClient:
    def __init__(self, *, failing_breakdowns=(), truncated_breakdowns=(), fail_base=False, bad_creatives=()):
        self.ad_account_id = "1234"
        self.failing_breakdowns = set(failing_breakdowns)
        self.truncated_breakdowns = set(truncated_breakdowns)
        self.fail_base = fail_base
        self.bad_creatives = set(bad_creatives)
        self.insight_calls = []

    def fetch_ad_account(self):
        return {"id": "act_1234", "name": "Acme Ads", "account_status": 1, "created_time": "2025-12-01T00:00:00+0000"}

    def fetch_entities(self, entity_type):
        return {
            "campaign": [{"id": "c1", "name": "Spring", "effective_status": "ACTIVE"}],
            "adset": [{"id": "s1", "name": "AU", "campaign_id": "c1"}],
            "ad": [
                {"id": "a1", "adset_id": "s1", "creative": {"id": "cr1"}},
                {"id": "a2", "adset_id": "s1", "creative": {"id": "cr2"}},
                {"id": "a3", "adset_id": "s1", "creative": {"id": "cr1"}},
            ],
        }[entity_type]

    def fetch_creative(self, creative_id):
        if creative_id in self.bad_creatives:
            raise ApiError("Meta", 400, "creative gone")
        return {"id": creative_id, "name": f"creative {creative_id}"}

    def fetch_insights(self, level, since, until, breakdowns=()):
        self.insight_calls.append((level, since, until, tuple(breakdowns)))
        if not breakdowns:
            if self.fail_base:
                raise ApiError("Meta", 500, "boom")
            return [{"campaign_id": "c1", "date_start": since, "date_stop": since, "spend": "12.5",
                     "impressions": "1000", "actions": [{"action_type": "purchase", "value": "2"}]}]
        if breakdowns[0] in self.truncated_breakdowns:
            raise PaginationTruncated("Meta", "act_1234/insights", 2, 50)
        if breakdowns[0] in self.failing_breakdowns:
            raise ApiError("Meta", 400, "breakdown not supported")
        if breakdowns[0] == "device_platform":
            return [
                {"campaign_id": "c1", "date_start": since, "date_stop": since, "device_platform": "mobile", "spend": "10"},
                {"campaign_id": "c1", "date_start": since, "date_stop": since, "device_platform": "desktop", "spend": "2.5"},
            ]
        return [{"campaign_id": "c1", "date_start": since, "date_stop": since, "country": "AU", "spend": "12.5"}]


def _ctx(job_type=JobType.INCREMENTAL, metadata=None, shop_metadata=None):
    credential = Credential(
        shop_id="acme",
        platform=Platform.META,
        access_token="meta-token",
        metadata=metadata if metadata is not None else {"ad_account_id": "act_1234"},
        shop=ShopInfo(shop_id="acme", metadata=shop_metadata or {}),
    )
    return SyncContext(job_id="job-9", shop_id="acme", platform=Platform.META, job_type=job_type, credential=credential)


@pytest.fixture
def make_driver(session_factory, clock):
    def _make(client):
        seen = {}

        def factory(token, account):
            seen["token"], seen["account"] = token, account
            return client

        driver = AdsDriver(
            StagingSink(session_factory),
            CursorStore(session_factory),
            client_factory=factory,
            levels=["campaign"],
            breakdowns=BREAKDOWNS,
            clock=clock,
        )
        return driver, seen

    return _make


# 方法 1：geo 失败、device 成功 → device 行照常落仓，任务成功
def test_failed_breakdown_does_not_block_others(make_driver, session_factory):
    CursorStore(session_factory).update("acme", Platform.META, {WATERMARK_KEY: "2026-03-08"}, order_key=WATERMARK_KEY)
    client = FakeMetaClient(failing_breakdowns={"country"}, bad_creatives={"cr2"})
    driver, seen = make_driver(client)

    result = driver.sync(_ctx())

    assert seen == {"token": "meta-token", "account": "1234"}
    # 水位线 2026-03-08 回看 3 天；end = 2026-03-10 - 1 天
    assert {(c[1], c[2]) for c in client.insight_calls} == {("2026-03-05", "2026-03-09")}
    assert result.details["breakdown_failures"] == 1
    assert result.details["AD_INSIGHT"] == 3
    # account + c1 + s1 + a1..a3 + cr1（cr2 拉取失败被跳过）
    assert result.details["AD_ENTITY"] == 7
    assert result.records_synced == 10
    assert result.watermark == {WATERMARK_KEY: "2026-03-09"}

    with session_factory() as s:
        rows = s.scalars(select(AdInsightDaily).order_by(AdInsightDaily.insight_key)).all()
        creatives = s.scalars(select(AdEntity.entity_id).where(AdEntity.entity_type == "creative")).all()
    assert sorted(r.breakdown for r in rows) == ["device", "device", "none"]
    assert {r.breakdown_values["device_platform"] for r in rows if r.breakdown == "device"} == {"mobile", "desktop"}
    base = next(r for r in rows if r.breakdown == "none")
    assert base.purchases == 2
    assert creatives == ["cr1"]


def test_base_insight_failure_fails_the_job(make_driver, session_factory):
    driver, _ = make_driver(FakeMetaClient(fail_base=True))

    with pytest.raises(ApiError):
        driver.sync(_ctx())
    assert CursorStore(session_factory).get("acme", Platform.META) is None


# 方法 2：分页被截断不算普通 breakdown 失败 → 任务失败，水位线不前进
def test_truncated_breakdown_fails_job_and_holds_watermark(make_driver, session_factory):
    CursorStore(session_factory).update("acme", Platform.META, {WATERMARK_KEY: "2026-03-08"}, order_key=WATERMARK_KEY)
    driver, _ = make_driver(FakeMetaClient(truncated_breakdowns={"country"}))

    with pytest.raises(PaginationTruncated):
        driver.sync(_ctx())
    assert CursorStore(session_factory).get("acme", Platform.META) == {WATERMARK_KEY: "2026-03-08"}
    with session_factory() as s:
        assert s.scalars(select(AdInsightDaily)).all() == []


def test_historical_windows_start_at_account_creation(make_driver):
    driver, _ = make_driver(FakeMetaClient())
    ranges = driver.build_date_ranges(_ctx(JobType.HISTORICAL_INIT), date(2026, 3, 9), datetime(2026, 1, 1))
    assert ranges == [
        (date(2026, 1, 1), date(2026, 1, 30)),
        (date(2026, 1, 31), date(2026, 3, 1)),
        (date(2026, 3, 2), date(2026, 3, 9)),
    ]


def test_incremental_without_watermark_uses_one_chunk(make_driver):
    driver, _ = make_driver(FakeMetaClient())
    ranges = driver.build_date_ranges(_ctx(), date(2026, 3, 9), None)
    assert ranges[0][0] == date(2026, 2, 23)
    assert ranges[-1][1] == date(2026, 3, 9)


def test_chunk_date_range_edges():
    assert chunk_date_range(date(2026, 3, 1), date(2026, 3, 1), 7) == [(date(2026, 3, 1), date(2026, 3, 1))]
    # start 晚于 end 时收敛成单日
    assert chunk_date_range(date(2026, 3, 5), date(2026, 3, 1), 7) == [(date(2026, 3, 1), date(2026, 3, 1))]
    assert chunk_date_range(date(2026, 3, 1), date(2026, 3, 10), 0) == [(date(2026, 3, 1), date(2026, 3, 10))]


def test_ad_account_from_shop_metadata():
    ctx = _ctx(metadata={}, shop_metadata={"platforms": {"meta": {"ad_account_id": "987"}}})
    assert AdsDriver.resolve_ad_account(ctx) == "987"


def test_missing_ad_account_is_config_error():
    with pytest.raises(ConfigError) as exc:
        AdsDriver.resolve_ad_account(_ctx(metadata={}))
    assert exc.value.code == "CONFIG_META_ACCOUNT_MISSING"
    assert exc.value.task == "meta_config"
