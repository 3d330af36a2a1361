
"""面向 Admin GraphQL 的轻量 Client：只放 bulk 导出协议相关的方法（发起 / 轮询 / 下载）"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Generator, Optional

import requests
from requests import RequestException, Timeout

from sync_engine.core.config import settings
from sync_engine.core.errors import ApiError
from sync_engine.integrations.shopify.graphql_queries import (
    BULK_OPERATION_BY_ID,
    RUN_BULK_QUERY,
    SHOP_PING,
)
from sync_engine.utils.retry import RetryPolicy


logger = logging.getLogger(__name__)

PLATFORM_LABEL = "Shopify"


class ShopifyAdminClient:

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: Optional[str] = None,
        timeout: Optional[int] = None,
        http_retry: Optional[RetryPolicy] = None,
        start_retry: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.shop_domain = shop_domain
        self._access_token = access_token
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.timeout = timeout or settings.SHOPIFY_HTTP_TIMEOUT
        self.http_retry = http_retry or RetryPolicy.exponential(
            settings.SHOPIFY_HTTP_RETRIES, settings.SHOPIFY_HTTP_BACKOFF_MS,
        )
        # userErrors 的“业务级重试”（THROTTLED 等）
        self.start_retry = start_retry or RetryPolicy.exponential(
            max(1, settings.SHOPIFY_BULK_START_RETRIES) - 1, max(200, settings.SHOPIFY_HTTP_BACKOFF_MS),
        )
        self._session = session or requests.Session()

    # ---------------- 基础：端点 & 认证 ----------------

    @property
    def endpoint(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self._access_token,
            "User-Agent": "SyncEngine/ShopifyAdminClient (+python)",
        }

    '''
    通用 GraphQL POST（带日志 + 重试）
        1) HTTP 5xx / 网络异常 / 非 JSON：按 http_retry 指数退避重试
        2) 429：优先按 Retry-After 等待后重试
        3) 其他 4xx：不重试，直接抛 ApiError
        4) 顶层 GraphQL errors：直接抛 ApiError（多为语法/权限问题）
    '''
    def _post_graphql(
        self,
        query: str,
        variables: Optional[dict] = None,
        *,
        op_name: str = "",
    ) -> dict:
        policy = self.http_retry
        payload = {"query": query, "variables": variables or {}}
        safe_vars_keys = list(payload["variables"].keys())

        for attempt in range(policy.max_attempts):
            last = not policy.can_retry(attempt)
            start = time.perf_counter()
            try:
                resp = self._session.post(self.endpoint, headers=self._headers(), json=payload, timeout=self.timeout)
            except Timeout:
                latency_ms = int((time.perf_counter() - start) * 1000)
                logger.warning("shopify.graphql.timeout op=%s latency_ms=%s attempt=%s/%s",
                    op_name, latency_ms, attempt, policy.max_attempts)
                if last:
                    raise
                policy.pause(attempt)
                continue
            except RequestException as e:
                latency_ms = int((time.perf_counter() - start) * 1000)
                logger.warning("shopify.graphql.request_exception op=%s latency_ms=%s attempt=%s/%s err=%s",
                    op_name, latency_ms, attempt, policy.max_attempts, type(e).__name__)
                if last:
                    raise
                policy.pause(attempt)
                continue

            latency_ms = int((time.perf_counter() - start) * 1000)
            status = resp.status_code

            if status == 429 and not last:
                retry_after = resp.headers.get("Retry-After")
                try:
                    delay = max(0.1, float(retry_after))
                except (TypeError, ValueError):
                    delay = None
                logger.warning("shopify.graphql.429_throttled op=%s latency_ms=%s attempt=%s/%s retry_after=%s",
                    op_name, latency_ms, attempt, policy.max_attempts, retry_after)
                policy.pause(attempt, delay)
                continue

            if status >= 400:
                logger.warning("shopify.graphql.http_error op=%s status=%s latency_ms=%s attempt=%s/%s",
                    op_name, status, latency_ms, attempt, policy.max_attempts)
                if status >= 500 and not last:
                    policy.pause(attempt)
                    continue
                raise ApiError(PLATFORM_LABEL, status, resp.text, task=op_name or None)

            try:
                data = resp.json()
            except ValueError:
                if not last:
                    logger.warning("shopify.graphql.non_json op=%s attempt=%s/%s", op_name, attempt, policy.max_attempts)
                    policy.pause(attempt)
                    continue
                raise ApiError(PLATFORM_LABEL, status, f"response is not JSON: {resp.text}", task=op_name or None)

            if data.get("errors"):
                logger.error("shopify.graphql.gql_errors op=%s latency_ms=%s attempt=%s errors=%s",
                    op_name, latency_ms, attempt, data["errors"])
                raise ApiError(PLATFORM_LABEL, status, data["errors"], task=op_name or None)

            logger.info("shopify.graphql.ok op=%s latency_ms=%s attempt=%s vars=%s",
                op_name, latency_ms, attempt, safe_vars_keys)
            return data

        raise ApiError(PLATFORM_LABEL, None, f"{op_name} failed after {policy.max_attempts} attempts")

    # 基础连通性探测
    def ping(self) -> dict:
        data = self._post_graphql(SHOP_PING, op_name="shop.ping")
        return (data.get("data") or {}).get("shop") or {}

    # ---------- Bulk：发起 ----------
    def run_bulk_query(self, query_doc: str, *, label: str = "bulk") -> dict:
        """
        bulkOperationRunQuery；返回 {id, status}
          - userErrors 为 THROTTLED / INTERNAL_SERVER_ERROR → 退避重试
          - 其他 userErrors（含“已有 bulk 在跑”）→ ApiError
        """
        policy = self.start_retry
        for attempt in range(policy.max_attempts):
            data = self._post_graphql(RUN_BULK_QUERY, {"query": query_doc}, op_name="bulkOperationRunQuery")
            payload = (data.get("data") or {}).get("bulkOperationRunQuery") or {}
            user_errors = payload.get("userErrors") or []

            if not user_errors:
                bulk_op = payload.get("bulkOperation")
                if not bulk_op or not bulk_op.get("id"):
                    raise ApiError(PLATFORM_LABEL, 200, "bulkOperationRunQuery missing bulkOperation payload",
                                   task="shopify_bulk_start")
                logger.info("shopify.bulk.started label=%s id=%s status=%s", label, bulk_op["id"], bulk_op.get("status"))
                return bulk_op

            msgs = [str(e.get("message") or "") for e in user_errors]
            codes = {str(e.get("code") or "") for e in user_errors}
            throttled = ("THROTTLED" in codes) or any("throttle" in m.lower() for m in msgs)
            transient = throttled or ("INTERNAL_SERVER_ERROR" in codes)
            if transient and policy.can_retry(attempt):
                sleep_s = policy.pause(attempt)
                logger.warning(
                    "shopify.bulk.start_retry label=%s attempt=%s/%s sleep=%.2fs codes=%s msgs=%s",
                    label, attempt + 1, policy.max_attempts, sleep_s, sorted(codes), msgs[:1],
                )
                continue

            raise ApiError(PLATFORM_LABEL, 200, {"userErrors": user_errors}, task="shopify_bulk_start")

        raise ApiError(PLATFORM_LABEL, None, "bulkOperationRunQuery failed after retries", task="shopify_bulk_start")

    # ---------- Bulk：通过 GID 取状态 ----------
    def get_bulk_operation(self, bulk_gid: str) -> dict:
        """
        返回：{id, status, errorCode, objectCount(int), url, ...}
        GID 不是 BulkOperation 时返回 {}
        """
        data = self._post_graphql(BULK_OPERATION_BY_ID, {"id": bulk_gid}, op_name="bulkOperation.node")
        node = dict((data.get("data") or {}).get("node") or {})
        if node.get("__typename") != "BulkOperation":
            return {}

        # 计数规范化为 int（Shopify 返回字符串）
        for key in ("objectCount", "rootObjectCount"):
            value = node.get(key)
            if isinstance(value, str):
                try:
                    node[key] = int(value)
                except ValueError:
                    node[key] = 0
        node.pop("__typename", None)
        return node

    # ---------- Bulk：下载 JSONL ----------
    def download_jsonl_stream(self, url: str) -> Generator[str, None, None]:
        """流式下载 JSONL，每次 yield 一行非空字符串。"""
        with self._session.get(url, stream=True, timeout=settings.BULK_DOWNLOAD_TIMEOUT) as r:
            if r.status_code >= 400:
                raise ApiError(PLATFORM_LABEL, r.status_code, r.text, task="shopify_bulk_download")
            for line in r.iter_lines(decode_unicode=True):
                if not line:
                    continue
                yield line
