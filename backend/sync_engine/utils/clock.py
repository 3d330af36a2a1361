from __future__ import annotations
from datetime import date, datetime, timezone
from typing import Any, Optional


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)  # 与 DB naive UTC 对齐


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Postgres 返回 aware、SQLite 返回 naive；统一成 naive UTC 再比较。"""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """
    解析 Shopify/Meta 返回的 ISO 时间（'2024-05-01T10:00:00Z' / '2024-05-01'）为 naive UTC。
    无法解析时返回 None。
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat_z(value: datetime) -> str:
    return as_naive_utc(value).replace(microsecond=0).isoformat() + "Z"
