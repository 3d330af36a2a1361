# shop / shop_credentials database repository（只读）

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from sync_engine.core.enums import Platform
from sync_engine.db.model.sync import Shop, ShopCredential


def get_credential(db: Session, shop_id: str, platform: Platform) -> Optional[ShopCredential]:
    stmt = select(ShopCredential).where(
        ShopCredential.shop_id == shop_id,
        ShopCredential.platform == platform.value,
    )
    return db.scalars(stmt).first()


def list_credentials(db: Session, shop_id: str) -> List[ShopCredential]:
    stmt = (
        select(ShopCredential)
        .where(ShopCredential.shop_id == shop_id)
        .order_by(ShopCredential.platform.asc())
    )
    return list(db.scalars(stmt))


def get_shop(db: Session, shop_id: str) -> Optional[Shop]:
    return db.get(Shop, shop_id)
