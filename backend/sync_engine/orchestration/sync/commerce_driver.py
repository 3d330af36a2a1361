"""
Shopify 订单同步（Bulk 导出状态机）

  HISTORICAL：一次全量 bulk（不看水位线），先清空对应 staging 实现全量刷新
  INCREMENTAL：updated_at > 水位线（无水位线时回看 SHOPIFY_INCREMENTAL_LOOKBACK_DAYS 天）

  每个 bulk：SUBMITTED →（每 BULK_POLL_INTERVAL_SEC 轮询）→ COMPLETED / FAILED / CANCELED
    - 超过 BULK_MAX_POLL_ATTEMPTS 次仍未结束 → BulkOperationError(TIMEOUT)
    - COMPLETED 且 objectCount=0 或没有 url → 空结果，按成功处理
  订单 bulk 之后再跑一个独立的 payouts bulk（同一个状态机）。
  新水位线 = 本次订单行里最大的 updatedAt（不是当前时间）；没有订单行时不动水位线。
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sync_engine.core.config import settings
from sync_engine.core.enums import Platform
from sync_engine.core.errors import (
    BulkOperationError,
    BulkOperationErrorKind,
    ConfigError,
    RetryExhausted,
)
from sync_engine.integrations.shopify.commerce_client import ShopifyAdminClient
from sync_engine.integrations.shopify.graphql_queries import BULK_PAYOUTS, build_orders_query
from sync_engine.orchestration.sync.base import PlatformSyncDriver, SyncContext, SyncResult
from sync_engine.services.cursor_store import CursorStore
from sync_engine.services.records import (
    LineItemRecord,
    OrderRecord,
    PayoutRecord,
    RecordKind,
    StagedPayload,
    TransactionRecord,
)
from sync_engine.services.staging import StagingSink
from sync_engine.utils.clock import isoformat_z, now_utc, parse_iso_datetime
from sync_engine.utils.retry import RetryPolicy
from sync_engine.utils.shop_id import normalize_shop_id, shop_id_to_domain

logger = logging.getLogger(__name__)

WATERMARK_KEY = "last_updated_at"
ORDER_FAMILY = (RecordKind.ORDER, RecordKind.LINE_ITEM, RecordKind.TRANSACTION)

ClientFactory = Callable[[str, str], ShopifyAdminClient]


def gid_type(gid: Any) -> Optional[str]:
    """'gid://shopify/LineItem/123' → 'LineItem'"""
    if not isinstance(gid, str) or not gid.startswith("gid://"):
        return None
    parts = gid[len("gid://"):].split("/")
    return parts[1] if len(parts) >= 3 else None


@dataclass
class BulkBuckets:
    """按实体类型分桶后的 JSONL 结果；parents_raw 保留原始订单行用于计算水位线。"""
    parents_raw: List[dict] = field(default_factory=list)
    records: Dict[RecordKind, List[StagedPayload]] = field(default_factory=dict)
    skipped: Counter = field(default_factory=Counter)

    def add(self, record: StagedPayload) -> None:
        self.records.setdefault(record.kind, []).append(record)

    def all_records(self) -> List[StagedPayload]:
        out: List[StagedPayload] = []
        for kind in ORDER_FAMILY + (RecordKind.PAYOUT,):
            out.extend(self.records.get(kind, []))
        return out


def classify_order_lines(lines: Iterable[str]) -> BulkBuckets:
    """
    订单 bulk 的 JSONL：
      - Order 行 → ORDER（内嵌 transactions 列表拆成 TRANSACTION，parent 指向订单）
      - LineItem 行（带 __parentId）→ LINE_ITEM
      - OrderTransaction 行（较新 API 会以子连接形式出现）→ TRANSACTION
    单行解析失败只计数并跳过。
    """
    buckets = BulkBuckets()
    for line in lines:
        try:
            obj = json.loads(line)
        except ValueError:
            buckets.skipped["malformed_json"] += 1
            logger.warning("shopify.bulk.line.skip reason=malformed_json line=%s", line[:200])
            continue
        if not isinstance(obj, dict):
            buckets.skipped["not_object"] += 1
            continue

        kind = gid_type(obj.get("id"))
        try:
            if kind == "Order":
                buckets.parents_raw.append(obj)
                buckets.add(OrderRecord.from_payload(obj))
                for txn in obj.get("transactions") or []:
                    if isinstance(txn, dict) and txn.get("id"):
                        buckets.add(TransactionRecord.from_payload(txn, order_id=str(obj["id"])))
            elif kind == "LineItem":
                buckets.add(LineItemRecord.from_payload(obj))
            elif kind == "OrderTransaction":
                buckets.add(TransactionRecord.from_payload(obj))
            else:
                buckets.skipped[f"unknown:{kind}"] += 1
        except (KeyError, TypeError, ValueError) as e:
            buckets.skipped[f"invalid:{kind}"] += 1
            logger.warning("shopify.bulk.line.skip kind=%s id=%s err=%s", kind, obj.get("id"), e)
    return buckets


def classify_payout_lines(lines: Iterable[str]) -> BulkBuckets:
    buckets = BulkBuckets()
    for line in lines:
        try:
            obj = json.loads(line)
            if gid_type(obj.get("id")) != "ShopifyPaymentsPayout":
                buckets.skipped["unknown"] += 1
                continue
            buckets.add(PayoutRecord.from_payload(obj))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            buckets.skipped["invalid"] += 1
            logger.warning("shopify.bulk.payout.skip err=%s line=%s", e, line[:200])
    return buckets


def max_updated_at(parents: Iterable[dict]) -> Optional[datetime]:
    latest: Optional[datetime] = None
    for obj in parents:
        ts = parse_iso_datetime(obj.get("updatedAt"))
        if ts is not None and (latest is None or ts > latest):
            latest = ts
    return latest


def _default_client_factory(shop_domain: str, access_token: str) -> ShopifyAdminClient:
    return ShopifyAdminClient(shop_domain, access_token)


class CommerceDriver(PlatformSyncDriver):

    platform = Platform.SHOPIFY

    def __init__(
        self,
        staging: StagingSink,
        cursors: CursorStore,
        *,
        client_factory: ClientFactory = _default_client_factory,
        poll_policy: Optional[RetryPolicy] = None,
        lookback_days: Optional[int] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        super().__init__(staging, cursors)
        self._client_factory = client_factory
        self.poll_policy = poll_policy or RetryPolicy(
            max_attempts=settings.BULK_MAX_POLL_ATTEMPTS,
            interval=float(settings.BULK_POLL_INTERVAL_SEC),
        )
        self.lookback_days = lookback_days or settings.SHOPIFY_INCREMENTAL_LOOKBACK_DAYS
        self._clock = clock

    # ---------------- 配置解析 ----------------

    @staticmethod
    def resolve_shop_domain(ctx: SyncContext) -> str:
        """shops.domain → shops.metadata.platforms.shopify.shop_domain → 凭证 metadata；都没有则报配置错误。"""
        shop = ctx.credential.shop
        candidates = [
            shop.domain if shop else None,
            shop.platform_metadata(Platform.SHOPIFY).get("shop_domain") if shop else None,
            ctx.credential.metadata.get("shop_domain"),
        ]
        for value in candidates:
            if not value or not isinstance(value, str):
                continue
            try:
                return shop_id_to_domain(normalize_shop_id(value))
            except ValueError:
                logger.warning("shopify.config.bad_domain shop_id=%s value=%s", ctx.shop_id, value)
        raise ConfigError(
            f"Missing Shopify domain for shop {ctx.shop_id}",
            code="CONFIG_SHOPIFY_DOMAIN_MISSING",
            task="shopify_config",
        )

    def _updated_since(self, ctx: SyncContext) -> Optional[str]:
        if ctx.historical:
            return None
        watermark = self.cursors.get(ctx.shop_id, self.platform) or {}
        since = parse_iso_datetime(watermark.get(WATERMARK_KEY))
        if since is None:
            since = self._clock() - timedelta(days=self.lookback_days)
            logger.info("shopify.sync.lookback shop_id=%s days=%s", ctx.shop_id, self.lookback_days)
        return isoformat_z(since)

    # ---------------- bulk 状态机 ----------------

    def await_bulk(self, client: ShopifyAdminClient, operation_id: str) -> dict:
        """轮询直到终态；返回 COMPLETED 的 bulk 节点。"""

        def step(attempt: int):
            node = client.get_bulk_operation(operation_id) or {}
            status = (node.get("status") or "").upper()
            logger.info("shopify.bulk.poll id=%s attempt=%s status=%s objects=%s",
                operation_id, attempt, status or "-", node.get("objectCount"))
            if not node:
                raise BulkOperationError(BulkOperationErrorKind.FAILED, operation_id, "NOT_FOUND")
            if status == "COMPLETED":
                return True, node
            if status in ("FAILED", "CANCELED", "CANCELLED"):
                kind = BulkOperationErrorKind.FAILED if status == "FAILED" else BulkOperationErrorKind.CANCELED
                raise BulkOperationError(kind, operation_id, node.get("errorCode"))
            return False, node

        try:
            return self.poll_policy.run(step)
        except RetryExhausted:
            raise BulkOperationError(BulkOperationErrorKind.TIMEOUT, operation_id) from None

    def run_bulk(self, client: ShopifyAdminClient, query_doc: str, *, label: str) -> List[str]:
        """发起 → 轮询 → 下载；空结果返回 []。"""
        op = client.run_bulk_query(query_doc, label=label)
        node = self.await_bulk(client, op["id"])
        url = node.get("url")
        if not url or int(node.get("objectCount") or 0) == 0:
            logger.info("shopify.bulk.empty label=%s id=%s objects=%s", label, op["id"], node.get("objectCount"))
            return []
        return list(client.download_jsonl_stream(url))

    # ---------------- sync ----------------

    def sync(self, ctx: SyncContext) -> SyncResult:
        domain = self.resolve_shop_domain(ctx)
        client = self._client_factory(domain, ctx.credential.access_token)
        staged_since = now_utc()   # 与 staged_records.received_at 同一时钟
        details: Dict[str, int] = {}

        # 1) 订单 + 行项目 + 交易
        updated_since = self._updated_since(ctx)
        logger.info("shopify.sync.start shop_id=%s job_id=%s job_type=%s since=%s",
            ctx.shop_id, ctx.job_id, ctx.job_type.value, updated_since or "-")
        order_lines = self.run_bulk(client, build_orders_query(updated_since), label="orders")
        orders = classify_order_lines(order_lines)
        if orders.skipped:
            logger.warning("shopify.sync.skipped shop_id=%s counts=%s", ctx.shop_id, dict(orders.skipped))

        if ctx.historical and order_lines:
            self.staging.clear(ctx.shop_id, ORDER_FAMILY)
        for kind in ORDER_FAMILY:
            bucket = orders.records.get(kind) or []
            if bucket:
                self.staging.stage(ctx.shop_id, bucket)

        # 2) payouts：历史任务先清空，保证全量刷新
        if ctx.historical:
            self.staging.clear(ctx.shop_id, [RecordKind.PAYOUT])
        payout_lines = self.run_bulk(client, BULK_PAYOUTS, label="payouts")
        payouts = classify_payout_lines(payout_lines)
        payout_bucket = payouts.records.get(RecordKind.PAYOUT) or []
        if payout_bucket:
            self.staging.stage(ctx.shop_id, payout_bucket)
        elif ctx.historical:
            self.staging.clear(ctx.shop_id, [RecordKind.PAYOUT])

        # 3) transform：每个记录族一次；records_synced 只计订单（父记录），子记录/payout 数放 details
        for kind in ORDER_FAMILY + (RecordKind.PAYOUT,):
            details[kind.value] = self.staging.transform(ctx.shop_id, kind, staged_since=staged_since)
        total = details[RecordKind.ORDER.value]

        # 4) 水位线：本次订单的最大 updatedAt
        watermark = None
        latest = max_updated_at(orders.parents_raw)
        if latest is not None:
            watermark = self.cursors.update(
                ctx.shop_id, self.platform, {WATERMARK_KEY: isoformat_z(latest)}, order_key=WATERMARK_KEY,
            )
        else:
            logger.info("shopify.sync.watermark_unchanged shop_id=%s", ctx.shop_id)

        logger.info("shopify.sync.done shop_id=%s job_id=%s records=%s details=%s watermark=%s",
            ctx.shop_id, ctx.job_id, total, details, watermark)
        return SyncResult(records_synced=total, watermark=watermark, details=details)
