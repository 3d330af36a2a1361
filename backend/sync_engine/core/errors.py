"""
   同步引擎统一异常类型。
   驱动/客户端只负责抛出；Worker 负责把异常转换成 job.error 载荷写回队列表。
"""

from __future__ import annotations

import traceback
from enum import Enum
from typing import Any, Dict, Optional

from sync_engine.utils.serialization import to_jsonable


WORKER_SERVICE_NAME = "sync-worker"


class SyncEngineError(Exception):
    """Base for all sync engine errors; carries a stable code and the originating task."""

    code: str = "SYNC_ERROR"
    task: Optional[str] = None

    def __init__(self, message: str, *, code: Optional[str] = None, task: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if task:
            self.task = task


class CredentialErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"


class CredentialError(SyncEngineError):
    """Credential missing, expired or unusable. Callers may skip the shop/platform."""

    task = "credential_lookup"

    def __init__(self, code: CredentialErrorCode, shop_id: str, platform: Any, detail: str = "") -> None:
        self.error_code = CredentialErrorCode(code)
        self.shop_id = shop_id
        self.platform = getattr(platform, "value", platform)
        message = f"credential {self.error_code.value.lower()} for shop={shop_id} platform={self.platform}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, code=f"CREDENTIAL_{self.error_code.value}")


class ConfigError(SyncEngineError):
    """Platform configuration (domain / ad account) missing from the credential metadata."""

    code = "CONFIG_ERROR"


class BulkOperationErrorKind(str, Enum):
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    TIMEOUT = "TIMEOUT"


class BulkOperationError(SyncEngineError):
    """Bulk export ended in FAILED / CANCELED, or never finished within the poll budget."""

    task = "shopify_bulk_poll"

    def __init__(
        self,
        kind: BulkOperationErrorKind,
        operation_id: Optional[str],
        error_code: Optional[str] = None,
    ) -> None:
        self.kind = BulkOperationErrorKind(kind)
        self.operation_id = operation_id
        self.error_code = error_code
        if self.kind is BulkOperationErrorKind.TIMEOUT:
            message = f"Bulk operation {operation_id} timed out"
        else:
            message = f"Bulk operation {operation_id} {self.kind.value}: {error_code}"
        super().__init__(message, code=f"BULK_OPERATION_{self.kind.value}")


class ApiError(SyncEngineError):
    """Non-2xx (or GraphQL-level error) response from an external platform."""

    code = "API_ERROR"

    def __init__(self, platform: str, status: Optional[int], body: Any, *, task: Optional[str] = None) -> None:
        self.platform = platform
        self.status = status
        self.body = body
        text = body if isinstance(body, str) else repr(body)
        super().__init__(f"{platform} API error: {status} {text[:1000]}", task=task)


class PaginationTruncated(SyncEngineError):
    """Cursor pagination hit the page cap with a next page still pending; rows fetched so far are incomplete."""

    code = "PAGINATION_TRUNCATED"

    def __init__(self, platform: str, path: str, pages: int, rows: int, *, task: Optional[str] = None) -> None:
        self.platform = platform
        self.path = path
        self.pages = pages
        self.rows = rows
        super().__init__(f"{platform} pagination of {path} stopped at {pages} pages ({rows} rows) with more pending",
                         task=task)


class UnknownPlatformError(SyncEngineError):
    code = "UNKNOWN_PLATFORM"
    task = "driver_lookup"


class RetryExhausted(SyncEngineError):
    code = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int, last_result: Any = None) -> None:
        self.attempts = attempts
        self.last_result = last_result
        super().__init__(f"gave up after {attempts} attempts")


def to_error_payload(exc: BaseException, task: Optional[str] = None) -> Dict[str, Any]:
    """
    把异常转换成写回 sync_jobs.error 的结构：{code, message, task, service, stack}
      - code/task 优先取异常自身属性，缺省用类名 / 调用方传入的 task
    """
    code = getattr(exc, "code", None) or type(exc).__name__
    message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return to_jsonable({
        "code": code,
        "message": message,
        "task": getattr(exc, "task", None) or task or "unknown",
        "service": WORKER_SERVICE_NAME,
        "stack": stack,
    })
