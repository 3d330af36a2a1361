"""
StagingSink：外部载荷的幂等落地区 + transform 入口

  stage(shop_id, records)          按 (shop_id, kind, natural_id) upsert，重复投递只覆盖
  clear(shop_id, kinds)            全量刷新前清空某些 kind
  transform(shop_id, kind, since)  把 staged 行交给 transformer 提升到仓库表，返回提升行数
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sync_engine.core.config import settings
from sync_engine.db.session import SessionFactory, session_scope
from sync_engine.repository import staging_repo
from sync_engine.services.records import RecordKind, StagedPayload
from sync_engine.services.warehouse_transform import WarehouseTransformer
from sync_engine.utils.clock import now_utc
from sync_engine.utils.serialization import to_jsonable

logger = logging.getLogger(__name__)


class StagingSink:

    def __init__(
        self,
        session_factory: SessionFactory,
        transformer: Optional[WarehouseTransformer] = None,
        *,
        chunk_size: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.chunk_size = int(chunk_size or settings.STAGING_UPSERT_CHUNK)
        self._transformer = transformer or WarehouseTransformer(chunk_size=self.chunk_size)

    @staticmethod
    def _to_row(shop_id: str, record: StagedPayload, received_at: datetime) -> dict:
        raw = to_jsonable(record.raw) if record.raw else None
        return {
            "shop_id": shop_id,
            "record_kind": record.kind.value,
            "natural_id": record.natural_id,
            "parent_id": record.parent_id,
            "schema_version": record.SCHEMA_VERSION,
            "fields": to_jsonable(record.typed_fields()),
            "raw": raw,
            "received_at": received_at,
        }

    def stage(self, shop_id: str, records: Sequence[StagedPayload]) -> int:
        if not records:
            return 0
        received_at = now_utc()
        rows = [self._to_row(shop_id, r, received_at) for r in records]

        counts: Dict[str, int] = {}
        for r in records:
            counts[r.kind.value] = counts.get(r.kind.value, 0) + 1

        with session_scope(self._session_factory) as db:
            written = staging_repo.upsert_staged(db, rows, chunk_size=self.chunk_size)
        logger.info("staging.stage.ok shop_id=%s rows=%s kinds=%s", shop_id, written, counts)
        return written

    def clear(self, shop_id: str, kinds: Iterable[RecordKind]) -> int:
        kinds: List[str] = [RecordKind(k).value for k in kinds]
        with session_scope(self._session_factory) as db:
            deleted = staging_repo.delete_staged(db, shop_id, kinds)
        logger.info("staging.clear shop_id=%s kinds=%s deleted=%s", shop_id, kinds, deleted)
        return deleted

    def transform(self, shop_id: str, kind: RecordKind, *, staged_since: Optional[datetime] = None) -> int:
        kind = RecordKind(kind)
        with session_scope(self._session_factory) as db:
            staged = staging_repo.list_staged(db, shop_id, kind.value, since=staged_since)
            if not staged:
                return 0
            return self._transformer.transform(db, shop_id, kind, staged)
