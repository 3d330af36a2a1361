from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from sync_engine.db.base import Base, JSONType
from sync_engine.utils.clock import now_utc


"""
  staged_records 表：外部 API 原始载荷落地区
  - (shop_id, record_kind, natural_id) 唯一 → 重复投递只会覆盖，不会新增
  - fields: 已识别的字段（按 schema_version）；raw: 其余未识别字段原样保留
"""
class StagedRecord(Base):

    __tablename__ = "staged_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    record_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    natural_id: Mapped[str] = mapped_column(String(512), nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    fields: Mapped[dict] = mapped_column(JSONType, nullable=False)
    raw: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("shop_id", "record_kind", "natural_id", name="uq_staged_records_natural_key"),
        Index("ix_staged_records_shop_kind_received", "shop_id", "record_kind", "received_at"),
    )
