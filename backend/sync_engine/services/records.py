"""
staging 记录的类型化定义（按 record_kind 区分的 tagged union）

每种记录：
  - natural_id / parent_id：staging 幂等键与父子关联
  - 显式字段：按 SCHEMA_VERSION 固定的一组字段，写入 staged_records.fields
  - raw：载荷里没被识别的字段原样保留，写入 staged_records.raw
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields as dc_fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union


class RecordKind(str, Enum):
    ORDER = "ORDER"
    LINE_ITEM = "LINE_ITEM"
    TRANSACTION = "TRANSACTION"
    PAYOUT = "PAYOUT"
    AD_ENTITY = "AD_ENTITY"
    AD_INSIGHT = "AD_INSIGHT"


COMMERCE_KINDS: Tuple[RecordKind, ...] = (
    RecordKind.ORDER, RecordKind.LINE_ITEM, RecordKind.TRANSACTION, RecordKind.PAYOUT,
)
ADS_KINDS: Tuple[RecordKind, ...] = (RecordKind.AD_ENTITY, RecordKind.AD_INSIGHT)


def _take(payload: Dict[str, Any], *keys: str) -> Any:
    """按顺序取第一个存在的键，并把这些键都从 payload 中移走。"""
    value = None
    found = False
    for key in keys:
        if key in payload:
            candidate = payload.pop(key)
            if not found:
                value, found = candidate, True
    return value


def _take_money(payload: Dict[str, Any], key: str) -> Tuple[Optional[str], Optional[str]]:
    """Shopify MoneyBag：{shopMoney: {amount, currencyCode}} → (amount, currency)"""
    bag = payload.pop(key, None) or {}
    money = bag.get("shopMoney") if isinstance(bag, dict) else None
    if not isinstance(money, dict):
        return None, None
    amount = money.get("amount")
    return (str(amount) if amount is not None else None), money.get("currencyCode")


@dataclass(frozen=True)
class _BaseRecord:
    kind: ClassVar[RecordKind]
    SCHEMA_VERSION: ClassVar[int] = 1

    natural_id: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def parent_id(self) -> Optional[str]:
        return None

    def typed_fields(self) -> Dict[str, Any]:
        skip = {"natural_id", "raw"}
        return {f.name: getattr(self, f.name) for f in dc_fields(self) if f.name not in skip}


# ---------------- commerce ----------------

@dataclass(frozen=True)
class OrderRecord(_BaseRecord):
    kind: ClassVar[RecordKind] = RecordKind.ORDER

    name: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    currency: Optional[str] = None
    subtotal_price: Optional[str] = None
    total_price: Optional[str] = None
    total_tax: Optional[str] = None
    total_discounts: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "OrderRecord":
        data = dict(payload)
        natural_id = str(data.pop("id"))
        subtotal, _ = _take_money(data, "subtotalPriceSet")
        total, total_currency = _take_money(data, "totalPriceSet")
        tax, _ = _take_money(data, "totalTaxSet")
        discounts, _ = _take_money(data, "totalDiscountsSet")
        data.pop("transactions", None)   # 拆成独立的 TRANSACTION 记录
        return cls(
            natural_id=natural_id,
            name=_take(data, "name"),
            email=_take(data, "email"),
            created_at=_take(data, "createdAt"),
            updated_at=_take(data, "updatedAt"),
            cancelled_at=_take(data, "cancelledAt"),
            financial_status=_take(data, "displayFinancialStatus", "financialStatus"),
            fulfillment_status=_take(data, "displayFulfillmentStatus", "fulfillmentStatus"),
            currency=_take(data, "currencyCode") or total_currency,
            subtotal_price=subtotal,
            total_price=total,
            total_tax=tax,
            total_discounts=discounts,
            raw=data,
        )


@dataclass(frozen=True)
class LineItemRecord(_BaseRecord):
    kind: ClassVar[RecordKind] = RecordKind.LINE_ITEM

    order_id: str = ""
    title: Optional[str] = None
    sku: Optional[str] = None
    quantity: Optional[int] = None
    unit_price: Optional[str] = None
    currency: Optional[str] = None

    @property
    def parent_id(self) -> Optional[str]:
        return self.order_id or None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "LineItemRecord":
        data = dict(payload)
        natural_id = str(data.pop("id"))
        order_id = str(data.pop("__parentId", "") or "")
        unit_price, currency = _take_money(data, "originalUnitPriceSet")
        variant = data.get("variant") if isinstance(data.get("variant"), dict) else {}
        sku = _take(data, "sku") or variant.get("sku")
        return cls(
            natural_id=natural_id,
            order_id=order_id,
            title=_take(data, "title", "name"),
            sku=sku,
            quantity=_take(data, "quantity"),
            unit_price=unit_price,
            currency=currency,
            raw=data,
        )


@dataclass(frozen=True)
class TransactionRecord(_BaseRecord):
    kind: ClassVar[RecordKind] = RecordKind.TRANSACTION

    order_id: str = ""
    txn_kind: Optional[str] = None
    status: Optional[str] = None
    gateway: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    processed_at: Optional[str] = None
    test: bool = False

    @property
    def parent_id(self) -> Optional[str]:
        return self.order_id or None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], order_id: Optional[str] = None) -> "TransactionRecord":
        data = dict(payload)
        natural_id = str(data.pop("id"))
        parent = order_id or data.pop("__parentId", None) or ""
        data.pop("__parentId", None)
        amount, currency = _take_money(data, "amountSet")
        plain_amount = _take(data, "amount")
        return cls(
            natural_id=natural_id,
            order_id=str(parent),
            txn_kind=_take(data, "kind"),
            status=_take(data, "status"),
            gateway=_take(data, "gateway"),
            amount=amount if amount is not None else (str(plain_amount) if plain_amount is not None else None),
            currency=currency or _take(data, "currencyCode"),
            processed_at=_take(data, "processedAt"),
            test=bool(_take(data, "test")),
            raw=data,
        )


@dataclass(frozen=True)
class PayoutRecord(_BaseRecord):
    kind: ClassVar[RecordKind] = RecordKind.PAYOUT

    status: Optional[str] = None
    issued_at: Optional[str] = None
    net_amount: Optional[str] = None
    currency: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PayoutRecord":
        data = dict(payload)
        natural_id = str(data.pop("id"))
        data.pop("__parentId", None)
        net = data.pop("net", None) or {}
        return cls(
            natural_id=natural_id,
            status=_take(data, "status"),
            issued_at=_take(data, "issuedAt"),
            net_amount=str(net["amount"]) if isinstance(net, dict) and net.get("amount") is not None else None,
            currency=net.get("currencyCode") if isinstance(net, dict) else None,
            raw=data,
        )


# ---------------- ads ----------------

@dataclass(frozen=True)
class AdEntityRecord(_BaseRecord):
    kind: ClassVar[RecordKind] = RecordKind.AD_ENTITY

    entity_type: str = ""
    entity_id: str = ""
    name: Optional[str] = None
    status: Optional[str] = None
    owner_id: Optional[str] = None   # adset→campaign, ad→adset

    @property
    def parent_id(self) -> Optional[str]:
        return self.owner_id

    @classmethod
    def from_payload(cls, entity_type: str, payload: Dict[str, Any], entity_id: Optional[str] = None) -> "AdEntityRecord":
        data = dict(payload)
        eid = str(entity_id or data.get("id") or data.get("account_id") or "")
        data.pop("id", None)
        owner = {"adset": "campaign_id", "ad": "adset_id"}.get(entity_type)
        return cls(
            natural_id=f"{entity_type}:{eid}",
            entity_type=entity_type,
            entity_id=eid,
            name=_take(data, "name"),
            status=_take(data, "effective_status", "status", "account_status"),
            owner_id=str(data[owner]) if owner and data.get(owner) else None,
            raw=data,
        )


_INSIGHT_METRICS = ("spend", "impressions", "clicks", "reach")


@dataclass(frozen=True)
class AdInsightRecord(_BaseRecord):
    kind: ClassVar[RecordKind] = RecordKind.AD_INSIGHT

    level: str = ""
    breakdown: str = "none"
    entity_id: str = ""
    date_start: str = ""
    date_stop: str = ""
    breakdown_values: Dict[str, Any] = field(default_factory=dict)
    spend: Optional[str] = None
    impressions: Optional[str] = None
    clicks: Optional[str] = None
    reach: Optional[str] = None
    actions: List[Dict[str, Any]] = field(default_factory=list)
    action_values: List[Dict[str, Any]] = field(default_factory=list)

    @staticmethod
    def entity_id_for(level: str, row: Dict[str, Any]) -> Optional[str]:
        for key in (f"{level}_id", "id", "campaign_id", "adset_id", "ad_id", "account_id"):
            value = row.get(key)
            if value:
                return str(value)
        return None

    @classmethod
    def from_payload(
        cls,
        level: str,
        breakdown: Optional[str],
        breakdown_fields: Tuple[str, ...],
        payload: Dict[str, Any],
    ) -> Optional["AdInsightRecord"]:
        """没有实体 id 的行无法幂等落地，返回 None 由调用方跳过。"""
        entity_id = cls.entity_id_for(level, payload)
        if not entity_id:
            return None
        data = dict(payload)
        date_start = str(data.pop("date_start", "") or "")
        date_stop = str(data.pop("date_stop", "") or date_start)
        values = {name: data.pop(name) for name in breakdown_fields if name in data}
        metrics = {name: data.pop(name, None) for name in _INSIGHT_METRICS}
        bd = breakdown or "none"
        value_key = ",".join(f"{k}={values[k]}" for k in sorted(values))
        natural_id = "|".join([level, bd, entity_id, date_start, date_stop, value_key])
        return cls(
            natural_id=natural_id,
            level=level,
            breakdown=bd,
            entity_id=entity_id,
            date_start=date_start,
            date_stop=date_stop,
            breakdown_values=values,
            spend=None if metrics["spend"] is None else str(metrics["spend"]),
            impressions=None if metrics["impressions"] is None else str(metrics["impressions"]),
            clicks=None if metrics["clicks"] is None else str(metrics["clicks"]),
            reach=None if metrics["reach"] is None else str(metrics["reach"]),
            actions=list(data.pop("actions", None) or []),
            action_values=list(data.pop("action_values", None) or []),
            raw=data,
        )


StagedPayload = Union[
    OrderRecord, LineItemRecord, TransactionRecord, PayoutRecord, AdEntityRecord, AdInsightRecord,
]

RECORD_TYPES: Dict[RecordKind, type] = {
    RecordKind.ORDER: OrderRecord,
    RecordKind.LINE_ITEM: LineItemRecord,
    RecordKind.TRANSACTION: TransactionRecord,
    RecordKind.PAYOUT: PayoutRecord,
    RecordKind.AD_ENTITY: AdEntityRecord,
    RecordKind.AD_INSIGHT: AdInsightRecord,
}
