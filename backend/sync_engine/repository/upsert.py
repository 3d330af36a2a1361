# 通用批量 upsert：INSERT ... ON CONFLICT DO UPDATE（Postgres 生产 / SQLite 测试）

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(db: Session, table):
    """按当前连接的方言选 insert 构造器（两者都支持 on_conflict_do_update）。"""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"upsert not supported for dialect {name!r}")


def _clean_row_values(row: dict) -> dict:
    clean: Dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            value = None
        if isinstance(value, Decimal) and not value.is_finite():
            value = None
        clean[str(key)] = value
    return clean


def dedupe_rows(rows: Sequence[dict], *, keys: Sequence[str]) -> List[dict]:
    """同一批里自然键重复的行只保留最后一条（ON CONFLICT 不允许同批次重复命中同一行）。"""
    deduped: Dict[tuple, dict] = {}
    for row in rows or []:
        identifier = tuple(row.get(k) for k in keys)
        if any(part in (None, "") for part in identifier):
            continue
        deduped[identifier] = row
    return list(deduped.values())


def execute_upsert(
    db: Session,
    table,
    rows: List[dict],
    *,
    conflict_keys: List[str],
    update_columns: List[str],
    extra_updates: Optional[Dict[str, Any]] = None,
    chunk_size: int = 500,
) -> int:
    if not rows:
        return 0

    # 冲突键本身不更新
    update_cols = [c for c in update_columns if c not in conflict_keys]
    total = 0

    for idx in range(0, len(rows), chunk_size):
        chunk = [_clean_row_values(row) for row in rows[idx: idx + chunk_size]]
        stmt = dialect_insert(db, table).values(chunk)

        # 冲突时用本批次的值覆盖旧行
        updates = {col: getattr(stmt.excluded, col) for col in update_cols}
        if extra_updates:
            updates.update(extra_updates)

        upsert_stmt = stmt.on_conflict_do_update(index_elements=conflict_keys, set_=updates)
        db.execute(upsert_stmt)
        total += len(chunk)
    return total
