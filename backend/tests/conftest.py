"""
公共 fixture：
  - 进程级 DATABASE_URL 指向内存 SQLite（必须在导入 sync_engine 之前设置）
  - 每个用例一个独立的内存库（StaticPool 让多个 Session 共享同一连接）
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sync_engine.db.base import Base
import sync_engine.db.model  # noqa: F401  注册所有表
from sync_engine.db.model.sync import Shop, ShopCredential


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeClock:
    """可手动拨动的时钟（naive UTC）。"""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    """代替 time.sleep：只记录，不等待。"""

    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def seed_credential(session_factory):
    """插入 shops + shop_credentials 行；返回一个可多次调用的函数。"""

    def _seed(
        shop_id: str,
        platform: str,
        *,
        token: Optional[str] = "tok",
        expires_at: Optional[datetime] = None,
        metadata: Optional[dict] = None,
        domain: Optional[str] = None,
        shop_metadata: Optional[dict] = None,
    ) -> None:
        with session_factory() as s:
            if s.get(Shop, shop_id) is None:
                s.add(Shop(
                    shop_id=shop_id,
                    domain=domain or f"{shop_id}.myshopify.com",
                    currency="AUD",
                    meta=shop_metadata,
                ))
            s.add(ShopCredential(
                shop_id=shop_id,
                platform=platform,
                access_token=token,
                expires_at=expires_at,
                meta=metadata,
            ))
            s.commit()

    return _seed


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0))
