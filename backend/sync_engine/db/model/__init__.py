# 聚合导入所有模型，供 Alembic 发现

from .sync import SyncJob, SyncCursor, Shop, ShopCredential
from .staging import StagedRecord
from .warehouse import (
    Order,
    OrderLineItem,
    OrderTransaction,
    Payout,
    AdEntity,
    AdInsightDaily,
)

__all__ = [
    # queue / cursor / credentials
    "SyncJob", "SyncCursor", "Shop", "ShopCredential",
    # staging
    "StagedRecord",
    # warehouse
    "Order", "OrderLineItem", "OrderTransaction", "Payout", "AdEntity", "AdInsightDaily",
]
