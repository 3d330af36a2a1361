"""
staged_records → 仓库事实表（orders / order_line_items / order_transactions / payouts / ad_entities / ad_insights_daily）

每个 record_kind 一个转换函数：staged 行 → 目标表一行（dict）
  - 单条转换失败（金额/时间格式不对、缺必填字段）只记 warning 并跳过，不影响整批
  - 转换成功的行按目标表自然键 upsert，返回成功提升的行数
广告转化列由 ACTION_MAPPINGS 声明式映射，新增转化类型只改表，不改解析逻辑。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from sync_engine.db.model.staging import StagedRecord
from sync_engine.db.model.warehouse import (
    AdEntity,
    AdInsightDaily,
    Order,
    OrderLineItem,
    OrderTransaction,
    Payout,
)
from sync_engine.repository.upsert import dedupe_rows, execute_upsert
from sync_engine.services.records import RecordKind
from sync_engine.utils.clock import now_utc, parse_iso_datetime

logger = logging.getLogger(__name__)


# ---------------- 声明式转化映射 ----------------

@dataclass(frozen=True)
class ActionMapping:
    """action_type → 目标列；action_types 按优先级排列，取第一个非零命中。"""
    column: str
    action_types: Tuple[str, ...]
    source: str = "actions"    # actions / action_values


PURCHASE_TYPES = ("purchase", "offsite_conversion.fb_pixel_purchase")

ACTION_MAPPINGS: Tuple[ActionMapping, ...] = (
    ActionMapping("purchases", PURCHASE_TYPES),
    ActionMapping("purchase_value", PURCHASE_TYPES, source="action_values"),
    ActionMapping("leads", ("lead",)),
    ActionMapping("add_to_cart", ("add_to_cart",)),
    ActionMapping("view_content", ("view_content",)),
)


def map_actions(
    actions: Optional[Sequence[dict]],
    action_values: Optional[Sequence[dict]],
    mappings: Sequence[ActionMapping] = ACTION_MAPPINGS,
) -> Dict[str, Optional[Decimal]]:
    """
    把 Meta 的 [{action_type, value}] 数组按映射表展开成命名列。
    未在映射表里的 action_type 不会提升（原始数组仍保留在 staging raw/fields 中）。
    """
    sources = {
        "actions": _index_actions(actions),
        "action_values": _index_actions(action_values),
    }
    out: Dict[str, Optional[Decimal]] = {}
    for mapping in mappings:
        indexed = sources.get(mapping.source, {})
        value: Optional[Decimal] = None
        for action_type in mapping.action_types:
            hit = indexed.get(action_type)
            if hit:
                value = hit
                break
            if hit is not None and value is None:
                value = hit
        out[mapping.column] = value
    return out


def _index_actions(items: Optional[Sequence[dict]]) -> Dict[str, Decimal]:
    indexed: Dict[str, Decimal] = {}
    for item in items or []:
        if not isinstance(item, dict):
            continue
        action_type = item.get("action_type")
        if not action_type or action_type in indexed:
            continue
        indexed[str(action_type)] = _decimal(item.get("value")) or Decimal("0")
    return indexed


# ---------------- 值转换 ----------------

def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"invalid decimal value {value!r}")


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(Decimal(str(value)))


def _required_dt(fields: dict, key: str) -> datetime:
    value = parse_iso_datetime(fields.get(key))
    if value is None:
        raise ValueError(f"missing or invalid {key}: {fields.get(key)!r}")
    return value


def _required_date(fields: dict, key: str) -> date:
    return _required_dt(fields, key).date()


# ---------------- 每个 kind 的行转换 ----------------

def _order_row(rec: StagedRecord, synced_at: datetime) -> dict:
    f = rec.fields or {}
    return {
        "shop_id": rec.shop_id,
        "shopify_gid": rec.natural_id,
        "order_number": f.get("name"),
        "email": f.get("email"),
        "financial_status": f.get("financial_status"),
        "fulfillment_status": f.get("fulfillment_status"),
        "currency": f.get("currency"),
        "subtotal_price": _decimal(f.get("subtotal_price")),
        "total_price": _decimal(f.get("total_price")),
        "total_tax": _decimal(f.get("total_tax")),
        "total_discounts": _decimal(f.get("total_discounts")),
        "cancelled_at": parse_iso_datetime(f.get("cancelled_at")),
        "created_at": _required_dt(f, "created_at"),
        "updated_at": _required_dt(f, "updated_at"),
        "synced_at": synced_at,
    }


def _line_item_row(rec: StagedRecord, synced_at: datetime) -> dict:
    f = rec.fields or {}
    order_gid = f.get("order_id") or rec.parent_id
    if not order_gid:
        raise ValueError("line item without parent order")
    return {
        "shop_id": rec.shop_id,
        "shopify_gid": rec.natural_id,
        "order_gid": order_gid,
        "title": f.get("title"),
        "sku": f.get("sku"),
        "quantity": _int(f.get("quantity")) or 0,
        "unit_price": _decimal(f.get("unit_price")),
        "currency": f.get("currency"),
        "synced_at": synced_at,
    }


def _transaction_row(rec: StagedRecord, synced_at: datetime) -> dict:
    f = rec.fields or {}
    order_gid = f.get("order_id") or rec.parent_id
    if not order_gid:
        raise ValueError("transaction without parent order")
    return {
        "shop_id": rec.shop_id,
        "shopify_gid": rec.natural_id,
        "order_gid": order_gid,
        "kind": f.get("txn_kind"),
        "status": f.get("status"),
        "gateway": f.get("gateway"),
        "amount": _decimal(f.get("amount")),
        "currency": f.get("currency"),
        "test": bool(f.get("test")),
        "processed_at": parse_iso_datetime(f.get("processed_at")),
        "synced_at": synced_at,
    }


def _payout_row(rec: StagedRecord, synced_at: datetime) -> dict:
    f = rec.fields or {}
    return {
        "shop_id": rec.shop_id,
        "shopify_gid": rec.natural_id,
        "status": f.get("status"),
        "issued_at": parse_iso_datetime(f.get("issued_at")),
        "net_amount": _decimal(f.get("net_amount")),
        "currency": f.get("currency"),
        "synced_at": synced_at,
    }


def _ad_entity_row(rec: StagedRecord, synced_at: datetime) -> dict:
    f = rec.fields or {}
    if not f.get("entity_type") or not f.get("entity_id"):
        raise ValueError("ad entity without type/id")
    return {
        "shop_id": rec.shop_id,
        "entity_type": f["entity_type"],
        "entity_id": f["entity_id"],
        "name": f.get("name"),
        "status": f.get("status"),
        "parent_id": f.get("owner_id") or rec.parent_id,
        "attributes": rec.raw or None,
        "synced_at": synced_at,
    }


def _ad_insight_row(rec: StagedRecord, synced_at: datetime) -> dict:
    f = rec.fields or {}
    row = {
        "shop_id": rec.shop_id,
        "insight_key": rec.natural_id,
        "level": f.get("level"),
        "breakdown": f.get("breakdown") or "none",
        "breakdown_values": f.get("breakdown_values") or None,
        "entity_id": f.get("entity_id"),
        "date_start": _required_date(f, "date_start"),
        "date_stop": _required_date(f, "date_stop"),
        "spend": _decimal(f.get("spend")),
        "impressions": _int(f.get("impressions")),
        "clicks": _int(f.get("clicks")),
        "reach": _int(f.get("reach")),
        "synced_at": synced_at,
    }
    if not row["level"] or not row["entity_id"]:
        raise ValueError("insight without level/entity id")
    row.update(map_actions(f.get("actions"), f.get("action_values")))
    return row


@dataclass(frozen=True)
class _Target:
    table: Any
    conflict_keys: List[str]
    convert: Callable[[StagedRecord, datetime], dict]
    requires_order: bool = False


_TARGETS: Dict[RecordKind, _Target] = {
    RecordKind.ORDER: _Target(Order, ["shop_id", "shopify_gid"], _order_row),
    RecordKind.LINE_ITEM: _Target(OrderLineItem, ["shop_id", "shopify_gid"], _line_item_row, requires_order=True),
    RecordKind.TRANSACTION: _Target(OrderTransaction, ["shop_id", "shopify_gid"], _transaction_row, requires_order=True),
    RecordKind.PAYOUT: _Target(Payout, ["shop_id", "shopify_gid"], _payout_row),
    RecordKind.AD_ENTITY: _Target(AdEntity, ["shop_id", "entity_type", "entity_id"], _ad_entity_row),
    RecordKind.AD_INSIGHT: _Target(AdInsightDaily, ["shop_id", "insight_key"], _ad_insight_row),
}


class WarehouseTransformer:
    """把某个 kind 的 staged 行提升到对应仓库表；返回成功提升的行数。"""

    def __init__(self, *, chunk_size: int = 500) -> None:
        self.chunk_size = chunk_size

    def transform(self, db: Session, shop_id: str, kind: RecordKind, staged: Sequence[StagedRecord]) -> int:
        kind = RecordKind(kind)
        target = _TARGETS[kind]
        synced_at = now_utc()

        rows: List[dict] = []
        skipped = 0
        for rec in staged:
            try:
                rows.append(target.convert(rec, synced_at))
            except (ValueError, TypeError, KeyError, InvalidOperation) as e:
                skipped += 1
                logger.warning(
                    "transform.record.skip shop_id=%s kind=%s natural_id=%s err=%s",
                    shop_id, kind.value, rec.natural_id, e,
                )

        if target.requires_order and rows:
            rows, orphans = self._drop_orphans(db, shop_id, kind, rows)
            skipped += orphans

        rows = dedupe_rows(rows, keys=target.conflict_keys)
        update_columns = [c.name for c in target.table.__table__.columns if c.name != "id"]
        promoted = execute_upsert(
            db,
            target.table,
            rows,
            conflict_keys=target.conflict_keys,
            update_columns=update_columns,
            chunk_size=self.chunk_size,
        )
        db.commit()
        logger.info(
            "transform.done shop_id=%s kind=%s promoted=%s skipped=%s",
            shop_id, kind.value, promoted, skipped,
        )
        return promoted

    def _drop_orphans(self, db: Session, shop_id: str, kind: RecordKind, rows: List[dict]) -> Tuple[List[dict], int]:
        """子记录的父订单必须已在 orders 里（本批或之前的同步），否则跳过。"""
        wanted = sorted({row["order_gid"] for row in rows})
        known = set()
        for i in range(0, len(wanted), self.chunk_size):
            chunk = wanted[i:i + self.chunk_size]
            known.update(db.scalars(
                select(Order.shopify_gid).where(Order.shop_id == shop_id, Order.shopify_gid.in_(chunk))
            ))

        kept: List[dict] = []
        for row in rows:
            if row["order_gid"] in known:
                kept.append(row)
            else:
                logger.warning(
                    "transform.record.skip_orphan shop_id=%s kind=%s natural_id=%s order_gid=%s",
                    shop_id, kind.value, row["shopify_gid"], row["order_gid"],
                )
        return kept, len(rows) - len(kept)
