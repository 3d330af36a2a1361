# sync_cursors database repository

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sync_engine.core.enums import Platform
from sync_engine.db.model.sync import SyncCursor
from sync_engine.utils.clock import now_utc, parse_iso_datetime
from sync_engine.utils.serialization import to_jsonable

logger = logging.getLogger(__name__)


def get_watermark(db: Session, shop_id: str, platform: Platform) -> Optional[Dict[str, Any]]:
    stmt = select(SyncCursor.watermark).where(
        SyncCursor.shop_id == shop_id,
        SyncCursor.platform == platform.value,
    )
    return db.scalars(stmt).first()


def _position(watermark: Optional[Dict[str, Any]], order_key: str) -> Optional[datetime]:
    if not watermark:
        return None
    return parse_iso_datetime(watermark.get(order_key))


def advance(
    db: Session,
    shop_id: str,
    platform: Platform,
    watermark: Dict[str, Any],
    *,
    order_key: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    水位线只前进：新值（watermark[order_key]）不大于已有值时保留旧水位线，仅刷新 last_success_at。
    行锁（FOR UPDATE）保证并发 run 的 read-compare-write 串行；返回最终生效的 watermark。
    """
    now = now or now_utc()
    new_pos = _position(watermark, order_key)
    if new_pos is None:
        raise ValueError(f"watermark[{order_key!r}] must be an ISO date/datetime, got {watermark!r}")

    row = db.scalars(
        select(SyncCursor)
        .where(SyncCursor.shop_id == shop_id, SyncCursor.platform == platform.value)
        .with_for_update()
    ).first()

    if row is not None:
        current = dict(row.watermark or {})
        cur_pos = _position(current, order_key)
        effective = watermark if cur_pos is None or new_pos > cur_pos else current
        if effective is current:
            logger.info(
                "cursor.advance.kept shop_id=%s platform=%s current=%s offered=%s",
                shop_id, platform.value, current.get(order_key), watermark.get(order_key),
            )
        db.execute(
            update(SyncCursor)
            .where(SyncCursor.id == row.id)
            .values(watermark=to_jsonable({**current, **effective}), last_success_at=now, updated_at=now)
        )
        db.commit()
        return {**current, **effective}

    try:
        db.execute(insert(SyncCursor).values(
            shop_id=shop_id,
            platform=platform.value,
            watermark=to_jsonable(watermark),
            last_success_at=now,
            created_at=now,
            updated_at=now,
        ))
        db.commit()
    except IntegrityError:
        # 并发插入撞唯一键：回滚后按“已存在”再走一遍比较
        db.rollback()
        return advance(db, shop_id, platform, watermark, order_key=order_key, now=now)
    return dict(watermark)
