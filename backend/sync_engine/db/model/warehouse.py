"""
  仓库层事实表：由 WarehouseTransformer 从 staged_records 提升而来
  所有表都以 (shop_id, 平台自然键) 唯一，重复 transform 只覆盖不新增
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, Integer, Numeric, String, UniqueConstraint, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from sync_engine.db.base import Base, JSONType
from sync_engine.utils.clock import now_utc


Money = Numeric(18, 4)


class Order(Base):

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    shopify_gid: Mapped[str] = mapped_column(String(255), nullable=False)
    order_number: Mapped[Optional[str]] = mapped_column(String(64))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    financial_status: Mapped[Optional[str]] = mapped_column(String(32))
    fulfillment_status: Mapped[Optional[str]] = mapped_column(String(32))
    currency: Mapped[Optional[str]] = mapped_column(String(8))
    subtotal_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    total_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    total_tax: Mapped[Optional[Decimal]] = mapped_column(Money)
    total_discounts: Mapped[Optional[Decimal]] = mapped_column(Money)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (UniqueConstraint("shop_id", "shopify_gid", name="uq_orders_shop_gid"),)


class OrderLineItem(Base):

    __tablename__ = "order_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    shopify_gid: Mapped[str] = mapped_column(String(255), nullable=False)
    order_gid: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(512))
    sku: Mapped[Optional[str]] = mapped_column(String(255))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Money)
    currency: Mapped[Optional[str]] = mapped_column(String(8))
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (UniqueConstraint("shop_id", "shopify_gid", name="uq_order_line_items_shop_gid"),)


class OrderTransaction(Base):

    __tablename__ = "order_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    shopify_gid: Mapped[str] = mapped_column(String(255), nullable=False)
    order_gid: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[Optional[str]] = mapped_column(String(32))
    status: Mapped[Optional[str]] = mapped_column(String(32))
    gateway: Mapped[Optional[str]] = mapped_column(String(64))
    amount: Mapped[Optional[Decimal]] = mapped_column(Money)
    currency: Mapped[Optional[str]] = mapped_column(String(8))
    test: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (UniqueConstraint("shop_id", "shopify_gid", name="uq_order_transactions_shop_gid"),)


class Payout(Base):

    __tablename__ = "payouts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    shopify_gid: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(32))
    issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    net_amount: Mapped[Optional[Decimal]] = mapped_column(Money)
    currency: Mapped[Optional[str]] = mapped_column(String(8))
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (UniqueConstraint("shop_id", "shopify_gid", name="uq_payouts_shop_gid"),)


class AdEntity(Base):

    __tablename__ = "ad_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)   # account / campaign / adset / ad / creative
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(512))
    status: Mapped[Optional[str]] = mapped_column(String(32))
    parent_id: Mapped[Optional[str]] = mapped_column(String(64))
    attributes: Mapped[Optional[dict]] = mapped_column(JSONType)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (UniqueConstraint("shop_id", "entity_type", "entity_id", name="uq_ad_entities_natural_key"),)


class AdInsightDaily(Base):

    __tablename__ = "ad_insights_daily"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shop_id: Mapped[str] = mapped_column(String(128), nullable=False)
    insight_key: Mapped[str] = mapped_column(String(512), nullable=False)
    level: Mapped[str] = mapped_column(String(16), nullable=False)
    breakdown: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    breakdown_values: Mapped[Optional[dict]] = mapped_column(JSONType)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date_start: Mapped[date] = mapped_column(Date, nullable=False)
    date_stop: Mapped[date] = mapped_column(Date, nullable=False)

    spend: Mapped[Optional[Decimal]] = mapped_column(Money)
    impressions: Mapped[Optional[int]] = mapped_column(Integer)
    clicks: Mapped[Optional[int]] = mapped_column(Integer)
    reach: Mapped[Optional[int]] = mapped_column(Integer)
    # 由 ACTION_MAPPINGS 声明式映射而来的转化列
    purchases: Mapped[Optional[Decimal]] = mapped_column(Money)
    purchase_value: Mapped[Optional[Decimal]] = mapped_column(Money)
    leads: Mapped[Optional[Decimal]] = mapped_column(Money)
    add_to_cart: Mapped[Optional[Decimal]] = mapped_column(Money)
    view_content: Mapped[Optional[Decimal]] = mapped_column(Money)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (UniqueConstraint("shop_id", "insight_key", name="uq_ad_insights_daily_natural_key"),)
