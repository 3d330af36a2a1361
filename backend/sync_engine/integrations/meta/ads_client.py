"""
Meta Marketing API 的低层 HTTP 客户端：access_token / 分页 / 重试 / 限流
  - get() 单次 GET（429/5xx/网络异常按 http_retry 指数退避，其它 4xx 直接抛 ApiError）
  - fetch_all_paginated() 跟随 paging.next 直到没有下一页，页间按 page_pacing 固定间隔
  - 可选 Redis 全局令牌桶：多 worker 共享同一个 ad account 的配额
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import requests

from sync_engine.core.config import settings
from sync_engine.core.errors import ApiError, PaginationTruncated
from sync_engine.infrastructure.ratelimit import RedisTokenBucketLimiter
from sync_engine.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

PLATFORM_LABEL = "Meta"


ENTITY_FIELDS: Dict[str, str] = {
    "account": ",".join([
        "id", "account_id", "name", "currency", "timezone_name",
        "business_name", "account_status", "disable_reason",
        "amount_spent", "balance", "created_time",
    ]),
    "campaign": ",".join([
        "id", "name", "status", "effective_status", "objective", "buying_type", "bid_strategy",
        "budget_remaining", "daily_budget", "lifetime_budget", "spend_cap",
        "special_ad_categories", "start_time", "stop_time",
        "created_time", "updated_time", "account_id",
    ]),
    "adset": ",".join([
        "id", "name", "status", "effective_status", "campaign_id", "account_id",
        "optimization_goal", "billing_event", "bid_amount", "bid_strategy",
        "daily_budget", "lifetime_budget", "budget_remaining",
        "start_time", "end_time", "created_time", "updated_time",
        "targeting", "destination_type", "promoted_object", "attribution_spec",
    ]),
    "ad": ",".join([
        "id", "name", "status", "effective_status", "adset_id", "campaign_id", "account_id",
        "creative{id}", "tracking_specs", "conversion_specs",
        "created_time", "updated_time",
    ]),
    "creative": ",".join([
        "id", "name", "title", "body", "link_url", "call_to_action_type",
        "image_hash", "image_url", "video_id", "thumbnail_url",
        "object_type", "object_story_spec", "asset_feed_spec",
        "product_set_id", "effective_object_story_id", "status",
    ]),
}

INSIGHTS_FIELDS = ",".join([
    # ids
    "account_id", "campaign_id", "adset_id", "ad_id",
    # date
    "date_start", "date_stop",
    # core / cost
    "spend", "impressions", "clicks", "reach", "frequency",
    "cpm", "cpc", "ctr", "cpp",
    # conversions
    "actions", "action_values",
    # engagement / video
    "post_engagement",
    "video_30_sec_watched_actions", "video_p25_watched_actions",
    "video_p50_watched_actions", "video_p75_watched_actions",
    "video_p100_watched_actions", "video_avg_time_watched_actions",
    # link clicks / cost per action / unique / attribution
    "outbound_clicks", "outbound_clicks_ctr",
    "cost_per_action_type", "cost_per_unique_action_type",
    "unique_clicks", "unique_ctr", "unique_link_clicks_ctr",
    "purchase_roas",
])

# breakdown 名 → Meta breakdowns 参数（None = 不细分）
BREAKDOWNS: Dict[Optional[str], tuple] = {
    None: (),
    "age_gender": ("age", "gender"),
    "device": ("device_platform", "publisher_platform", "platform_position"),
    "geo": ("country",),
}


def normalize_ad_account_id(value: str) -> str:
    """'act_123' / '123' → '123'"""
    text = (value or "").strip()
    return text[4:] if text.startswith("act_") else text


class MetaAdsClient:
    """Meta Graph API 客户端；业务字段结构交给上层驱动处理。"""

    def __init__(
        self,
        access_token: str,
        ad_account_id: str,
        *,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        page_limit: Optional[int] = None,
        http_retry: Optional[RetryPolicy] = None,
        page_pacing: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        limiter: Optional[RedisTokenBucketLimiter] = None,
    ) -> None:
        self._access_token = access_token
        self.ad_account_id = normalize_ad_account_id(ad_account_id)
        self.api_version = api_version or settings.META_API_VERSION
        self.base_url = f"{(base_url or settings.META_GRAPH_BASE_URL).rstrip('/')}/{self.api_version}"
        self.timeout = timeout or settings.META_HTTP_TIMEOUT
        self.page_limit = page_limit or settings.META_PAGE_LIMIT
        self.http_retry = http_retry or RetryPolicy.exponential(settings.META_HTTP_RETRIES, settings.META_HTTP_BACKOFF_MS)
        # 分页节流：最多 META_MAX_PAGES 页，页间固定间隔
        self.page_pacing = page_pacing or RetryPolicy(
            max_attempts=settings.META_MAX_PAGES,
            interval=settings.META_PAGE_DELAY_MS / 1000.0,
        )
        self._session = session or requests.Session()
        self._limiter = limiter if limiter is not None else RedisTokenBucketLimiter.for_meta(self.ad_account_id)

    @property
    def account_path(self) -> str:
        return f"act_{self.ad_account_id}"

    # ---------- Public ----------
    def get(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> dict:
        """GET 一个 Graph 端点；path 以 http 开头时视为完整 URL（paging.next）。"""
        if path_or_url.startswith("http"):
            url = path_or_url
        else:
            url = f"{self.base_url}/{path_or_url.lstrip('/')}"

        policy = self.http_retry
        for attempt in range(policy.max_attempts):
            last = not policy.can_retry(attempt)
            if self._limiter is not None:
                self._limiter.acquire(sleep=policy.sleep)

            start = time.perf_counter()
            try:
                resp = self._session.get(url, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                logger.warning("meta.http.request_exception path=%s attempt=%s/%s err=%s",
                    _short(url), attempt, policy.max_attempts, type(e).__name__)
                if last:
                    raise
                policy.pause(attempt)
                continue

            latency_ms = int((time.perf_counter() - start) * 1000)
            status = resp.status_code
            if status == 429 or status >= 500:
                logger.warning("meta.http.retryable status=%s path=%s latency_ms=%s attempt=%s/%s",
                    status, _short(url), latency_ms, attempt, policy.max_attempts)
                if not last:
                    policy.pause(attempt)
                    continue
            if status >= 400:
                raise ApiError(PLATFORM_LABEL, status, resp.text, task="meta_fetch")

            try:
                data = resp.json()
            except ValueError:
                raise ApiError(PLATFORM_LABEL, status, f"non-JSON response: {(resp.text or '')[:500]}", task="meta_fetch")
            if isinstance(data, dict) and data.get("error"):
                raise ApiError(PLATFORM_LABEL, status, json.dumps(data["error"]), task="meta_fetch")

            logger.debug("meta.http.ok path=%s latency_ms=%s attempt=%s", _short(url), latency_ms, attempt)
            return data

        raise ApiError(PLATFORM_LABEL, None, f"GET {_short(url)} failed after {policy.max_attempts} attempts",
                       task="meta_fetch")

    def fetch_object(self, path: str, fields: str) -> dict:
        """单对象读取；响应带 data 数组时取第一个元素。"""
        data = self.get(path, {"access_token": self._access_token, "fields": fields})
        if isinstance(data.get("data"), list):
            return data["data"][0] if data["data"] else {}
        return data

    def fetch_all_paginated(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[dict]:
        """
        第一页带 access_token/limit/params；之后直接请求 paging.next（已含 token 与游标）。
        页数受 page_pacing.max_attempts 限制，页间 sleep page_pacing.interval。
        到上限时还有 paging.next → 抛 PaginationTruncated，不返回残缺结果。
        """
        pacing = self.page_pacing
        first_params = {"access_token": self._access_token, "limit": self.page_limit, **(params or {})}
        results: List[dict] = []
        next_url: Optional[str] = path

        for page in range(pacing.max_attempts):
            data = self.get(next_url, first_params if page == 0 else None)
            results.extend(data.get("data") or [])
            next_url = (data.get("paging") or {}).get("next")
            if not next_url:
                break
            pacing.pause(0)
        else:
            if next_url:
                logger.warning("meta.paginate.max_pages path=%s pages=%s rows=%s", path, pacing.max_attempts, len(results))
                raise PaginationTruncated(PLATFORM_LABEL, _short(path), pacing.max_attempts, len(results),
                                          task="meta_paginate")

        return results

    # ---------- 业务端点 ----------
    def fetch_ad_account(self) -> dict:
        return self.fetch_object(self.account_path, ENTITY_FIELDS["account"])

    def fetch_entities(self, entity_type: str) -> List[dict]:
        """campaign / adset / ad → act_<id>/{campaigns,adsets,ads}"""
        edge = {"campaign": "campaigns", "adset": "adsets", "ad": "ads"}[entity_type]
        return self.fetch_all_paginated(f"{self.account_path}/{edge}", {"fields": ENTITY_FIELDS[entity_type]})

    def fetch_creative(self, creative_id: str) -> dict:
        return self.fetch_object(creative_id, ENTITY_FIELDS["creative"])

    def fetch_insights(
        self,
        level: str,
        since: str,
        until: str,
        breakdowns: Sequence[str] = (),
    ) -> List[dict]:
        params: Dict[str, Any] = {
            "fields": INSIGHTS_FIELDS,
            "time_range": json.dumps({"since": since, "until": until}),
            "time_increment": 1,
            "level": level,
        }
        if breakdowns:
            params["breakdowns"] = ",".join(breakdowns)
        return self.fetch_all_paginated(f"{self.account_path}/insights", params)


def _short(url: str) -> str:
    # 日志里去掉 query（含 access_token）
    return url.split("?", 1)[0]
