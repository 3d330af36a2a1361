from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from sync_engine.db.base import Base, JSONType
from sync_engine.utils.clock import now_utc


_PLATFORMS_SQL = "('SHOPIFY','META')"
_JOB_TYPES_SQL = "('HISTORICAL_INIT','HISTORICAL_REBUILD','INCREMENTAL')"
_JOB_STATUS_SQL = "('QUEUED','IN_PROGRESS','SUCCEEDED','FAILED')"


def _uuid() -> str:
    return str(uuid.uuid4())


"""
  sync_jobs 表：同步任务队列 + 审计记录（只由 claim / complete 修改，不删除）
  - status: QUEUED → IN_PROGRESS → SUCCEEDED / FAILED
  - 同一 (shop_id, platform, job_type) 同时只能有一条 QUEUED（部分唯一索引）
"""
class SyncJob(Base):

    __tablename__ = "sync_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="QUEUED")

    # 触发方附带的参数，例如 {"follow_up_historical": true}
    job_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    error: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    records_synced: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now())
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(f"platform IN {_PLATFORMS_SQL}", name="platform"),
        CheckConstraint(f"job_type IN {_JOB_TYPES_SQL}", name="job_type"),
        CheckConstraint(f"status IN {_JOB_STATUS_SQL}", name="status"),
        Index("ix_sync_jobs_status_created", "status", "created_at"),
        Index(
            "uq_sync_jobs_queued_per_shop",
            "shop_id", "platform", "job_type",
            unique=True,
            postgresql_where=text("status = 'QUEUED'"),
            sqlite_where=text("status = 'QUEUED'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<SyncJob {self.id} {self.shop_id}/{self.platform}/{self.job_type} {self.status}>"


"""
  sync_cursors 表：每个 (shop_id, platform) 一行水位线
"""
class SyncCursor(Base):

    __tablename__ = "sync_cursors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    watermark: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("shop_id", "platform", name="uq_sync_cursors_shop_platform"),
    )


class Shop(Base):

    __tablename__ = "shops"

    shop_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now())


"""
  shop_credentials 表：由设置页写入，本服务只读
  - metadata: shopify_domain / ad_account_id 等平台参数
"""
class ShopCredential(Base):

    __tablename__ = "shop_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now(), onupdate=now_utc)

    __table_args__ = (
        UniqueConstraint("shop_id", "platform", name="uq_shop_credentials_shop_platform"),
    )
