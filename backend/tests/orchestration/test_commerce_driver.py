import json

import pytest
from sqlalchemy import func, select

from sync_engine.core.enums import JobType, Platform
from sync_engine.core.errors import BulkOperationError, BulkOperationErrorKind, ConfigError
from sync_engine.db.model.staging import StagedRecord
from sync_engine.db.model.warehouse import Order, OrderLineItem
from sync_engine.orchestration.sync.base import SyncContext
from sync_engine.orchestration.sync.commerce_driver import (
    WATERMARK_KEY,
    CommerceDriver,
    classify_order_lines,
)
from sync_engine.services.credential_store import Credential, ShopInfo
from sync_engine.services.cursor_store import CursorStore
from sync_engine.services.records import PayoutRecord, RecordKind
from sync_engine.services.staging import StagingSink
from sync_engine.utils.retry import RetryPolicy


class FakeBulkClient:
    """
    按 label 预置 bulk 结果：
      statuses：get_bulk_operation 依次返回的状态（最后一个会一直重复）
      lines：COMPLETED 后下载到的 JSONL 行
    """

    def __init__(self, plans):
        self.plans = plans
        self.queries = {}
        self._polls = {}

    def run_bulk_query(self, query_doc, *, label="bulk"):
        self.queries[label] = query_doc
        self._polls[label] = 0
        return {"id": f"gid://shopify/BulkOperation/{label}", "status": "CREATED"}

    def get_bulk_operation(self, op_id):
        label = op_id.rsplit("/", 1)[-1]
        plan = self.plans[label]
        statuses = plan.get("statuses", ["COMPLETED"])
        idx = min(self._polls[label], len(statuses) - 1)
        self._polls[label] += 1
        status = statuses[idx]
        lines = plan.get("lines", [])
        node = {"id": op_id, "status": status, "objectCount": str(len(lines)), "errorCode": plan.get("errorCode")}
        if status == "COMPLETED" and lines:
            node["url"] = f"https://storage.example.com/{label}.jsonl"
        return node

    def download_jsonl_stream(self, url):
        label = url.rsplit("/", 1)[-1].split(".")[0]
        return iter(self.plans[label]["lines"])


def _order_line(n, *, updated, amount="20.00"):
    return json.dumps({
        "id": f"gid://shopify/Order/{n}",
        "name": f"#{1000 + n}",
        "createdAt": "2026-03-01T00:00:00Z",
        "updatedAt": updated,
        "totalPriceSet": {"shopMoney": {"amount": amount, "currencyCode": "AUD"}},
        "transactions": [],
    })


def _ctx(job_type=JobType.INCREMENTAL, shop_domain="acme.myshopify.com"):
    shop = ShopInfo(shop_id="acme", domain=shop_domain, currency="AUD")
    credential = Credential(shop_id="acme", platform=Platform.SHOPIFY, access_token="shpat_x", shop=shop)
    return SyncContext(job_id="job-1", shop_id="acme", platform=Platform.SHOPIFY, job_type=job_type, credential=credential)


@pytest.fixture
def make_driver(session_factory, fake_sleep, clock):
    created = {}

    def _make(plans, *, max_attempts=3):
        client = FakeBulkClient(plans)

        def factory(domain, token):
            created["domain"], created["token"] = domain, token
            return client

        driver = CommerceDriver(
            StagingSink(session_factory),
            CursorStore(session_factory),
            client_factory=factory,
            poll_policy=RetryPolicy(max_attempts=max_attempts, interval=5.0, sleep=fake_sleep),
            lookback_days=7,
            clock=clock,
        )
        return driver, client, created

    return _make


# 方法 1：10 个订单里 2 个金额非法 → 8 条落仓；水位线仍取全部 10 行的最大 updatedAt
def test_bad_orders_are_skipped_but_watermark_covers_all(make_driver, session_factory):
    lines = [_order_line(n, updated=f"2026-03-0{min(n, 9)}T08:00:00Z") for n in range(1, 9)]
    lines.append(_order_line(9, updated="2026-03-09T10:00:00Z", amount="n/a"))
    lines.append(_order_line(10, updated="2026-03-09T23:30:00Z", amount="oops"))
    driver, _, created = make_driver({"orders": {"lines": lines}, "payouts": {"lines": []}})

    result = driver.sync(_ctx())

    assert created == {"domain": "acme.myshopify.com", "token": "shpat_x"}
    assert result.records_synced == 8
    assert result.details[RecordKind.ORDER.value] == 8
    assert result.watermark == {WATERMARK_KEY: "2026-03-09T23:30:00Z"}
    assert CursorStore(session_factory).get("acme", Platform.SHOPIFY) == result.watermark
    with session_factory() as s:
        assert s.scalar(select(func.count()).select_from(Order)) == 8


def _line_item_line(n):
    return json.dumps({
        "id": f"gid://shopify/LineItem/{n}",
        "title": "Mug",
        "quantity": 1,
        "originalUnitPriceSet": {"shopMoney": {"amount": "20.00", "currencyCode": "AUD"}},
        "__parentId": f"gid://shopify/Order/{n}",
    })


# 方法 1b：带行项目时 records_synced 仍只计订单；坏订单的行项目不落仓
def test_records_synced_counts_orders_only(make_driver, session_factory):
    lines = []
    for n in range(1, 11):
        lines.append(_order_line(n, updated="2026-03-09T08:00:00Z", amount="oops" if n > 8 else "20.00"))
        lines.append(_line_item_line(n))
    driver, _, _ = make_driver({"orders": {"lines": lines}, "payouts": {"lines": []}})

    result = driver.sync(_ctx())

    assert result.records_synced == 8
    assert result.details == {"ORDER": 8, "LINE_ITEM": 8, "TRANSACTION": 0, "PAYOUT": 0}
    with session_factory() as s:
        assert s.scalar(select(func.count()).select_from(OrderLineItem)) == 8


# 方法 2：COMPLETED 且 objectCount=0 → 成功、0 条、水位线不变
def test_empty_completed_bulk_is_success(make_driver, session_factory, fake_sleep):
    driver, _, _ = make_driver({"orders": {"lines": []}, "payouts": {"lines": []}})

    result = driver.sync(_ctx())

    assert result.records_synced == 0
    assert result.watermark is None
    assert fake_sleep.calls == []
    assert CursorStore(session_factory).get("acme", Platform.SHOPIFY) is None


@pytest.mark.parametrize("status, kind", [
    ("FAILED", BulkOperationErrorKind.FAILED),
    ("CANCELED", BulkOperationErrorKind.CANCELED),
])
def test_terminal_bulk_failure_raises(make_driver, status, kind):
    driver, _, _ = make_driver({"orders": {"statuses": ["RUNNING", status], "errorCode": "ACCESS_DENIED"}})

    with pytest.raises(BulkOperationError) as exc:
        driver.sync(_ctx())
    assert exc.value.kind is kind
    assert exc.value.error_code == "ACCESS_DENIED"
    assert exc.value.code == f"BULK_OPERATION_{kind.value}"


# 方法 3：一直 RUNNING → 用完 3 次轮询后 TIMEOUT，中间睡两次 5s
def test_bulk_poll_timeout(make_driver, fake_sleep):
    driver, _, _ = make_driver({"orders": {"statuses": ["RUNNING"]}}, max_attempts=3)

    with pytest.raises(BulkOperationError) as exc:
        driver.sync(_ctx())
    assert exc.value.kind is BulkOperationErrorKind.TIMEOUT
    assert fake_sleep.calls == [5.0, 5.0]


def test_incremental_uses_stored_watermark(make_driver, session_factory):
    CursorStore(session_factory).update(
        "acme", Platform.SHOPIFY, {WATERMARK_KEY: "2026-03-01T00:00:00Z"}, order_key=WATERMARK_KEY,
    )
    driver, client, _ = make_driver({"orders": {"lines": []}, "payouts": {"lines": []}})

    driver.sync(_ctx())

    assert "updated_at:>'2026-03-01T00:00:00Z'" in client.queries["orders"]


def test_incremental_without_watermark_looks_back(make_driver):
    driver, client, _ = make_driver({"orders": {"lines": []}, "payouts": {"lines": []}})

    driver.sync(_ctx())

    # clock = 2026-03-10 12:00，回看 7 天
    assert "updated_at:>'2026-03-03T12:00:00Z'" in client.queries["orders"]


def test_historical_ignores_watermark_and_refreshes_payouts(make_driver, session_factory):
    CursorStore(session_factory).update(
        "acme", Platform.SHOPIFY, {WATERMARK_KEY: "2026-03-01T00:00:00Z"}, order_key=WATERMARK_KEY,
    )
    StagingSink(session_factory).stage("acme", [PayoutRecord.from_payload({
        "id": "gid://shopify/ShopifyPaymentsPayout/1",
        "status": "PAID",
        "issuedAt": "2026-02-01T00:00:00Z",
        "net": {"amount": "5.00", "currencyCode": "AUD"},
    })])
    driver, client, _ = make_driver({
        "orders": {"lines": [_order_line(1, updated="2026-02-15T00:00:00Z")]},
        "payouts": {"lines": []},
    })

    result = driver.sync(_ctx(JobType.HISTORICAL_REBUILD))

    assert "updated_at" not in client.queries["orders"]
    assert result.records_synced == 1
    # 历史任务也只前进水位线
    assert result.watermark == {WATERMARK_KEY: "2026-03-01T00:00:00Z"}
    with session_factory() as s:
        payouts = s.scalar(select(func.count()).select_from(StagedRecord)
                           .where(StagedRecord.record_kind == RecordKind.PAYOUT.value))
    assert payouts == 0


def test_classify_order_lines_splits_children():
    lines = [
        json.dumps({
            "id": "gid://shopify/Order/1",
            "updatedAt": "2026-03-01T00:00:00Z",
            "transactions": [{"id": "gid://shopify/OrderTransaction/11", "kind": "SALE"}],
        }),
        json.dumps({"id": "gid://shopify/LineItem/21", "title": "Mug", "quantity": 2,
                    "__parentId": "gid://shopify/Order/1"}),
        json.dumps({"id": "gid://shopify/Fulfillment/31"}),
        "{not json",
    ]

    buckets = classify_order_lines(lines)

    assert [r.natural_id for r in buckets.records[RecordKind.ORDER]] == ["gid://shopify/Order/1"]
    assert buckets.records[RecordKind.TRANSACTION][0].parent_id == "gid://shopify/Order/1"
    assert buckets.records[RecordKind.LINE_ITEM][0].parent_id == "gid://shopify/Order/1"
    assert buckets.skipped["unknown:Fulfillment"] == 1
    assert buckets.skipped["malformed_json"] == 1
    assert len(buckets.parents_raw) == 1


def test_missing_domain_is_config_error(make_driver):
    driver, _, _ = make_driver({})
    shop = ShopInfo(shop_id="acme")
    credential = Credential(shop_id="acme", platform=Platform.SHOPIFY, access_token="t", shop=shop)
    ctx = SyncContext(job_id="j", shop_id="acme", platform=Platform.SHOPIFY,
                      job_type=JobType.INCREMENTAL, credential=credential)

    with pytest.raises(ConfigError) as exc:
        driver.sync(ctx)
    assert exc.value.code == "CONFIG_SHOPIFY_DOMAIN_MISSING"


def test_domain_falls_back_to_credential_metadata():
    credential = Credential(shop_id="acme", platform=Platform.SHOPIFY, access_token="t",
                            metadata={"shop_domain": "https://Acme.myshopify.com/admin"},
                            shop=ShopInfo(shop_id="acme"))
    ctx = SyncContext(job_id="j", shop_id="acme", platform=Platform.SHOPIFY,
                      job_type=JobType.INCREMENTAL, credential=credential)
    assert CommerceDriver.resolve_shop_domain(ctx) == "acme.myshopify.com"
