"""
平台同步驱动的公共接口：
  Worker 只认 PlatformSyncDriver.sync(ctx) -> SyncResult，具体平台由 DriverRegistry 一次性选出
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional

from sync_engine.core.enums import JobType, Platform
from sync_engine.services.credential_store import Credential
from sync_engine.services.cursor_store import CursorStore
from sync_engine.services.staging import StagingSink


@dataclass(frozen=True)
class SyncContext:
    job_id: str
    shop_id: str
    platform: Platform
    job_type: JobType
    credential: Credential
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def historical(self) -> bool:
        return self.job_type.is_historical


@dataclass
class SyncResult:
    records_synced: int
    watermark: Optional[Dict[str, Any]] = None
    details: Dict[str, int] = field(default_factory=dict)


class PlatformSyncDriver(ABC):
    """一个平台一个实现；拉取 → staging → transform → 推进水位线。"""

    platform: ClassVar[Platform]

    def __init__(self, staging: StagingSink, cursors: CursorStore) -> None:
        self.staging = staging
        self.cursors = cursors

    @abstractmethod
    def sync(self, ctx: SyncContext) -> SyncResult:
        raise NotImplementedError
