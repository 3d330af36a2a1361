# staged_records database repository

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from sync_engine.db.model.staging import StagedRecord
from sync_engine.repository.upsert import dedupe_rows, execute_upsert

NATURAL_KEY = ["shop_id", "record_kind", "natural_id"]
STAGED_UPDATE_COLUMNS = ["parent_id", "schema_version", "fields", "raw", "received_at"]


def upsert_staged(db: Session, rows: List[dict], *, chunk_size: int = 500) -> int:
    """按 (shop_id, record_kind, natural_id) 幂等落地；同批次重复键只保留最后一条。"""
    deduped = dedupe_rows(rows, keys=NATURAL_KEY)
    written = execute_upsert(
        db,
        StagedRecord,
        deduped,
        conflict_keys=NATURAL_KEY,
        update_columns=STAGED_UPDATE_COLUMNS,
        chunk_size=chunk_size,
    )
    db.commit()
    return written


def delete_staged(db: Session, shop_id: str, kinds: Iterable[str]) -> int:
    kinds = [str(k) for k in kinds]
    if not kinds:
        return 0
    res = db.execute(
        delete(StagedRecord)
        .where(StagedRecord.shop_id == shop_id, StagedRecord.record_kind.in_(kinds))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(res.rowcount or 0)


def list_staged(
    db: Session,
    shop_id: str,
    kind: str,
    *,
    since: Optional[datetime] = None,
) -> List[StagedRecord]:
    """since 给定时只返回该时间点之后（含）落地/刷新的行。"""
    stmt = select(StagedRecord).where(
        StagedRecord.shop_id == shop_id,
        StagedRecord.record_kind == kind,
    )
    if since is not None:
        stmt = stmt.where(StagedRecord.received_at >= since)
    stmt = stmt.order_by(StagedRecord.id.asc())
    return list(db.scalars(stmt))


def count_staged(db: Session, shop_id: str, kinds: Sequence[str]) -> int:
    stmt = select(func.count()).select_from(StagedRecord).where(
        StagedRecord.shop_id == shop_id,
        StagedRecord.record_kind.in_([str(k) for k in kinds]),
    )
    return int(db.scalar(stmt) or 0)
