# CursorStore：每个 (shop_id, platform) 一条水位线；读总是直读库，写只前进

from __future__ import annotations

from typing import Any, Dict, Optional

from sync_engine.core.enums import Platform
from sync_engine.db.session import SessionFactory, session_scope
from sync_engine.repository import cursor_repo


class CursorStore:

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def get(self, shop_id: str, platform: Platform) -> Optional[Dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            watermark = cursor_repo.get_watermark(db, shop_id, Platform.parse(platform))
        return dict(watermark) if watermark else None

    def update(self, shop_id: str, platform: Platform, watermark: Dict[str, Any], *, order_key: str) -> Dict[str, Any]:
        """返回最终生效的水位线（新值不更大时保留旧值）。"""
        with session_scope(self._session_factory) as db:
            return cursor_repo.advance(db, shop_id, Platform.parse(platform), watermark, order_key=order_key)
