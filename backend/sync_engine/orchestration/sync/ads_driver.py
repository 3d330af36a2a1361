"""
Meta 广告同步（分页 insights × 多层级 × 多 breakdown）

  1) 实体层级：account → campaigns → adsets → ads → creatives，staging 后提升到 ad_entities
  2) 时间窗口：
       HISTORICAL  从账户 created_time（或 META_HISTORICAL_YEARS 年前）到 end，按 META_HISTORICAL_CHUNK_DAYS 切片
       INCREMENTAL 从水位线 insights_date - META_INCREMENTAL_OVERLAP_DAYS（无水位线则 end - META_INCREMENTAL_CHUNK_DAYS）开始
     end = 今天 - META_REPORTING_LAG_DAYS（Meta 数据滞后）
  3) 每个窗口 × 层级：先拉不细分的基础 insights（失败即整个任务失败），
     再逐个 breakdown 拉取；单个 breakdown 失败只记日志，不影响其它 breakdown
  4) 全部尝试完后 transform 一次，水位线 insights_date = end
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from requests import RequestException

from sync_engine.core.config import settings
from sync_engine.core.enums import Platform
from sync_engine.core.errors import ApiError, ConfigError
from sync_engine.integrations.meta.ads_client import BREAKDOWNS, MetaAdsClient, normalize_ad_account_id
from sync_engine.orchestration.sync.base import PlatformSyncDriver, SyncContext, SyncResult
from sync_engine.services.cursor_store import CursorStore
from sync_engine.services.records import ADS_KINDS, AdEntityRecord, AdInsightRecord, RecordKind
from sync_engine.services.staging import StagingSink
from sync_engine.utils.clock import now_utc, parse_iso_datetime

logger = logging.getLogger(__name__)

WATERMARK_KEY = "insights_date"

DateRange = Tuple[date, date]
ClientFactory = Callable[[str, str], MetaAdsClient]


def chunk_date_range(start: date, end: date, chunk_days: int) -> List[DateRange]:
    """[start, end] 闭区间按 chunk_days 切片；chunk_days<=0 时整段返回。"""
    if start > end:
        start = end
    if chunk_days <= 0:
        return [(start, end)]
    ranges: List[DateRange] = []
    cursor = start
    while cursor <= end:
        chunk_end = min(end, cursor + timedelta(days=chunk_days - 1))
        ranges.append((cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return ranges


def _years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:  # 2 月 29 日
        return day.replace(year=day.year - years, day=28)


def _default_client_factory(access_token: str, ad_account_id: str) -> MetaAdsClient:
    return MetaAdsClient(access_token, ad_account_id)


class AdsDriver(PlatformSyncDriver):

    platform = Platform.META

    def __init__(
        self,
        staging: StagingSink,
        cursors: CursorStore,
        *,
        client_factory: ClientFactory = _default_client_factory,
        levels: Optional[Sequence[str]] = None,
        breakdowns: Optional[Dict[Optional[str], tuple]] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        super().__init__(staging, cursors)
        self._client_factory = client_factory
        self.levels = list(levels or settings.META_INSIGHT_LEVELS)
        self.breakdowns = dict(BREAKDOWNS if breakdowns is None else breakdowns)
        self.batch_size = batch_size or settings.META_INSIGHT_BATCH_SIZE
        self._clock = clock

    # ---------------- 配置解析 ----------------

    @staticmethod
    def resolve_ad_account(ctx: SyncContext) -> str:
        shop = ctx.credential.shop
        candidates = [
            ctx.credential.metadata.get("ad_account_id"),
            shop.platform_metadata(Platform.META).get("ad_account_id") if shop else None,
        ]
        for value in candidates:
            if isinstance(value, (str, int)) and str(value).strip():
                return normalize_ad_account_id(str(value))
        raise ConfigError(
            f"Missing Meta ad account id for shop {ctx.shop_id}",
            code="CONFIG_META_ACCOUNT_MISSING",
            task="meta_config",
        )

    def end_date(self) -> date:
        return self._clock().date() - timedelta(days=settings.META_REPORTING_LAG_DAYS)

    def build_date_ranges(self, ctx: SyncContext, end: date, account_created: Optional[datetime]) -> List[DateRange]:
        if ctx.historical:
            if account_created is not None:
                start = account_created.date()
            else:
                start = _years_before(end, settings.META_HISTORICAL_YEARS)
            return chunk_date_range(start, end, settings.META_HISTORICAL_CHUNK_DAYS)

        watermark = self.cursors.get(ctx.shop_id, self.platform) or {}
        cursor = parse_iso_datetime(watermark.get(WATERMARK_KEY))
        if cursor is not None:
            start = cursor.date() - timedelta(days=settings.META_INCREMENTAL_OVERLAP_DAYS)
        else:
            start = end - timedelta(days=settings.META_INCREMENTAL_CHUNK_DAYS)
        return chunk_date_range(start, end, settings.META_INCREMENTAL_CHUNK_DAYS)

    # ---------------- 实体层级 ----------------

    def sync_entities(self, ctx: SyncContext, client: MetaAdsClient) -> Tuple[List[AdEntityRecord], Optional[datetime]]:
        records: List[AdEntityRecord] = []

        account = client.fetch_ad_account()
        account_created = parse_iso_datetime(account.get("created_time"))
        records.append(AdEntityRecord.from_payload("account", account, entity_id=client.ad_account_id))

        creative_ids: List[str] = []
        for entity_type in ("campaign", "adset", "ad"):
            rows = client.fetch_entities(entity_type)
            logger.info("meta.entities.fetched shop_id=%s type=%s count=%s", ctx.shop_id, entity_type, len(rows))
            for row in rows:
                if not row.get("id"):
                    continue
                records.append(AdEntityRecord.from_payload(entity_type, row))
                creative = row.get("creative") if entity_type == "ad" else None
                if isinstance(creative, dict) and creative.get("id") and creative["id"] not in creative_ids:
                    creative_ids.append(str(creative["id"]))

        # creative 单条失败只跳过
        for creative_id in creative_ids:
            try:
                creative = client.fetch_creative(creative_id)
            except (ApiError, RequestException) as e:
                logger.warning("meta.creative.skip shop_id=%s creative_id=%s err=%s", ctx.shop_id, creative_id, e)
                continue
            records.append(AdEntityRecord.from_payload("creative", creative, entity_id=creative_id))

        self.staging.stage(ctx.shop_id, records)
        return records, account_created

    # ---------------- insights ----------------

    def _stage_insights(
        self,
        ctx: SyncContext,
        level: str,
        breakdown: Optional[str],
        rows: List[dict],
    ) -> int:
        fields = self.breakdowns.get(breakdown, ())
        staged = 0
        skipped = 0
        for i in range(0, len(rows), self.batch_size):
            batch = []
            for row in rows[i: i + self.batch_size]:
                record = AdInsightRecord.from_payload(level, breakdown, fields, row)
                if record is None:
                    skipped += 1
                    continue
                batch.append(record)
            if batch:
                staged += self.staging.stage(ctx.shop_id, batch)
        if skipped:
            logger.warning("meta.insights.skip_no_entity shop_id=%s level=%s breakdown=%s skipped=%s",
                ctx.shop_id, level, breakdown or "none", skipped)
        return staged

    def sync_insights(self, ctx: SyncContext, client: MetaAdsClient, ranges: List[DateRange]) -> Dict[str, int]:
        stats = {"staged": 0, "breakdown_failures": 0}
        for since, until in ranges:
            s, u = since.isoformat(), until.isoformat()
            for level in self.levels:
                # 基础 insights（不细分）
                base = client.fetch_insights(level, s, u)
                stats["staged"] += self._stage_insights(ctx, level, None, base)

                for name, fields in self.breakdowns.items():
                    if name is None:
                        continue
                    # PaginationTruncated 不吞：残缺数据时水位线不能前进
                    try:
                        rows = client.fetch_insights(level, s, u, fields)
                    except (ApiError, RequestException) as e:
                        stats["breakdown_failures"] += 1
                        logger.warning(
                            "meta.insights.breakdown_failed shop_id=%s level=%s breakdown=%s range=%s..%s err=%s",
                            ctx.shop_id, level, name, s, u, e,
                        )
                        continue
                    stats["staged"] += self._stage_insights(ctx, level, name, rows)
        return stats

    # ---------------- sync ----------------

    def sync(self, ctx: SyncContext) -> SyncResult:
        account_id = self.resolve_ad_account(ctx)
        client = self._client_factory(ctx.credential.access_token, account_id)
        staged_since = now_utc()   # 与 staged_records.received_at 同一时钟

        if ctx.historical:
            self.staging.clear(ctx.shop_id, ADS_KINDS)

        logger.info("meta.sync.start shop_id=%s job_id=%s job_type=%s account=%s",
            ctx.shop_id, ctx.job_id, ctx.job_type.value, account_id)

        _, account_created = self.sync_entities(ctx, client)
        entities = self.staging.transform(ctx.shop_id, RecordKind.AD_ENTITY, staged_since=staged_since)

        end = self.end_date()
        ranges = self.build_date_ranges(ctx, end, account_created)
        logger.info("meta.sync.windows shop_id=%s windows=%s first=%s last=%s",
            ctx.shop_id, len(ranges), ranges[0][0] if ranges else "-", end)
        stats = self.sync_insights(ctx, client, ranges)
        insights = self.staging.transform(ctx.shop_id, RecordKind.AD_INSIGHT, staged_since=staged_since)

        watermark = self.cursors.update(
            ctx.shop_id, self.platform, {WATERMARK_KEY: end.isoformat()}, order_key=WATERMARK_KEY,
        )
        details = {
            RecordKind.AD_ENTITY.value: entities,
            RecordKind.AD_INSIGHT.value: insights,
            "breakdown_failures": stats["breakdown_failures"],
        }
        logger.info("meta.sync.done shop_id=%s job_id=%s details=%s watermark=%s",
            ctx.shop_id, ctx.job_id, details, watermark)
        return SyncResult(records_synced=entities + insights, watermark=watermark, details=details)
