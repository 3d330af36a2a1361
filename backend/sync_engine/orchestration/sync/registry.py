# 平台 → 同步驱动 的注册表；Worker / API 只在这里做一次平台选择

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sync_engine.core.enums import Platform
from sync_engine.core.errors import UnknownPlatformError
from sync_engine.db.session import SessionFactory
from sync_engine.orchestration.sync.ads_driver import AdsDriver
from sync_engine.orchestration.sync.base import PlatformSyncDriver
from sync_engine.orchestration.sync.commerce_driver import CommerceDriver
from sync_engine.services.cursor_store import CursorStore
from sync_engine.services.staging import StagingSink

logger = logging.getLogger(__name__)


class DriverRegistry:

    def __init__(self, drivers: Optional[Iterable[PlatformSyncDriver]] = None) -> None:
        self._drivers: Dict[Platform, PlatformSyncDriver] = {}
        for driver in drivers or ():
            self.register(driver)

    def register(self, driver: PlatformSyncDriver) -> None:
        if driver.platform in self._drivers:
            logger.warning("drivers.register.replace platform=%s", driver.platform.value)
        self._drivers[driver.platform] = driver

    def get(self, platform: Platform | str) -> PlatformSyncDriver:
        try:
            key = Platform.parse(platform)
        except ValueError:
            raise UnknownPlatformError(f"Unsupported platform: {platform}") from None
        driver = self._drivers.get(key)
        if driver is None:
            raise UnknownPlatformError(f"Unsupported platform: {key.value}")
        return driver

    def platforms(self) -> List[Platform]:
        return list(self._drivers)


def build_default_registry(session_factory: SessionFactory) -> DriverRegistry:
    staging = StagingSink(session_factory)
    cursors = CursorStore(session_factory)
    return DriverRegistry([
        CommerceDriver(staging, cursors),
        AdsDriver(staging, cursors),
    ])
