"""
CredentialStore：按 (shop_id, platform) 解析平台凭证，并顺带解析店铺信息

三层缓存（同一个 TTL，与凭证自身 expires_at 无关）：
  1) credential   key=(shop_id, platform)
  2) shop         key=shop_id
  3) platforms    key=shop_id（该店铺所有凭证行，用于判断能跑哪些同步）
过期检查在“新取”与“命中缓存”两条路径上都做：缓存里的 token 过期了也必须报 EXPIRED。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from sync_engine.core.config import settings
from sync_engine.core.enums import Platform
from sync_engine.core.errors import CredentialError, CredentialErrorCode
from sync_engine.db.session import SessionFactory, session_scope
from sync_engine.repository import credential_repo
from sync_engine.utils.clock import as_naive_utc, now_utc
from sync_engine.utils.shop_id import normalize_shop_id, shop_id_to_domain

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ShopInfo:
    shop_id: str
    domain: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def platform_metadata(self, platform: Platform) -> Dict[str, Any]:
        """shops.metadata.platforms.<shopify|meta> 下的平台配置（可能不存在）。"""
        platforms = self.metadata.get("platforms") if isinstance(self.metadata, dict) else None
        if not isinstance(platforms, dict):
            return {}
        value = platforms.get(platform.value.lower())
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class CredentialRecord:
    shop_id: str
    platform: Platform
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    from_env: bool = False


@dataclass(frozen=True)
class Credential(CredentialRecord):
    shop: Optional[ShopInfo] = None


@dataclass
class _Entry(Generic[T]):
    fetched_at: datetime
    value: T


class CredentialStore:

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = now_utc,
        allow_env_fallback: Optional[bool] = None,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.CREDENTIAL_CACHE_TTL_SEC)
        self._clock = clock
        self._allow_env_fallback = (
            settings.WORKER_ALLOW_ENV_FALLBACKS if allow_env_fallback is None else allow_env_fallback
        )
        self._credentials: Dict[Tuple[str, str], _Entry[CredentialRecord]] = {}
        self._shops: Dict[str, _Entry[ShopInfo]] = {}
        self._platform_rows: Dict[str, _Entry[List[CredentialRecord]]] = {}

    # ---------------- public ----------------

    def get(self, shop_id: str, platform: Platform | str) -> Credential:
        platform = Platform.parse(platform)
        key = (shop_id, platform.value)
        now = self._clock()

        cached = self._credentials.get(key)
        if cached is not None and self._fresh(cached, now):
            self._ensure_not_expired(cached.value, now)
            return self._hydrate(cached.value)

        record = self._fetch_credential(shop_id, platform, now)
        self._credentials[key] = _Entry(now, record)
        return self._hydrate(record)

    def get_shop(self, shop_id: str) -> ShopInfo:
        now = self._clock()
        cached = self._shops.get(shop_id)
        if cached is not None and self._fresh(cached, now):
            return cached.value

        with session_scope(self._session_factory) as db:
            row = credential_repo.get_shop(db, shop_id)
            shop = None
            if row is not None:
                shop = ShopInfo(
                    shop_id=row.shop_id,
                    domain=row.domain,
                    currency=row.currency,
                    timezone=row.timezone,
                    metadata=dict(row.meta or {}),
                )

        if shop is None:
            if not self._allow_env_fallback:
                raise CredentialError(CredentialErrorCode.INVALID, shop_id, "-", "shop not found")
            logger.warning("credentials.shop.env_fallback shop_id=%s", shop_id)
            shop = ShopInfo(shop_id=shop_id, domain=shop_id_to_domain(shop_id))

        self._shops[shop_id] = _Entry(now, shop)
        return shop

    def list_platforms_for_shop(self, shop_id: str) -> List[Platform]:
        """该店铺下 token 非空且未过期的平台列表（顺序稳定）。"""
        now = self._clock()
        cached = self._platform_rows.get(shop_id)
        if cached is not None and self._fresh(cached, now):
            rows = cached.value
        else:
            with session_scope(self._session_factory) as db:
                rows = [self._snapshot(r) for r in credential_repo.list_credentials(db, shop_id)]
            self._platform_rows[shop_id] = _Entry(now, rows)

        platforms: List[Platform] = []
        for rec in rows:
            if not (rec.access_token or "").strip():
                continue
            if rec.expires_at is not None and rec.expires_at <= now:
                continue
            if rec.platform not in platforms:
                platforms.append(rec.platform)
        return platforms

    def invalidate(self) -> None:
        self._credentials.clear()
        self._shops.clear()
        self._platform_rows.clear()
        logger.info("credentials.cache.invalidated")

    # ---------------- internals ----------------

    def _fresh(self, entry: _Entry, now: datetime) -> bool:
        return now - entry.fetched_at < self._ttl

    @staticmethod
    def _snapshot(row) -> CredentialRecord:
        return CredentialRecord(
            shop_id=row.shop_id,
            platform=Platform.parse(row.platform),
            access_token=row.access_token or "",
            refresh_token=row.refresh_token,
            expires_at=as_naive_utc(row.expires_at),
            metadata=dict(row.meta or {}),
        )

    def _fetch_credential(self, shop_id: str, platform: Platform, now: datetime) -> CredentialRecord:
        with session_scope(self._session_factory) as db:
            row = credential_repo.get_credential(db, shop_id, platform)
            record = self._snapshot(row) if row is not None else None

        if record is None:
            record = self._env_credential(shop_id, platform)
        if record is None:
            raise CredentialError(CredentialErrorCode.NOT_FOUND, shop_id, platform, "no credential configured")

        if not record.access_token.strip():
            raise CredentialError(CredentialErrorCode.INVALID, shop_id, platform, "missing access token")
        self._ensure_not_expired(record, now)
        return record

    def _env_credential(self, shop_id: str, platform: Platform) -> Optional[CredentialRecord]:
        """只在 WORKER_ALLOW_ENV_FALLBACKS=true 时启用，本地开发用。"""
        if not self._allow_env_fallback:
            return None

        if platform is Platform.SHOPIFY:
            token = settings.SHOPIFY_ADMIN_ACCESS_TOKEN
            domain = settings.SHOPIFY_SHOP_DOMAIN
            if token is None or not domain:
                return None
            try:
                if normalize_shop_id(domain) != shop_id:
                    return None
            except ValueError:
                return None
            metadata = {"shop_domain": shop_id_to_domain(shop_id)}
        else:
            token = settings.META_ACCESS_TOKEN
            if token is None:
                return None
            metadata = {"ad_account_id": settings.META_AD_ACCOUNT_ID} if settings.META_AD_ACCOUNT_ID else {}

        logger.warning(
            "credentials.env_fallback shop_id=%s platform=%s (enable only for local development)",
            shop_id, platform.value,
        )
        return CredentialRecord(
            shop_id=shop_id,
            platform=platform,
            access_token=token.get_secret_value(),
            metadata=metadata,
            from_env=True,
        )

    @staticmethod
    def _ensure_not_expired(record: CredentialRecord, now: datetime) -> None:
        if record.expires_at is not None and record.expires_at <= now:
            raise CredentialError(
                CredentialErrorCode.EXPIRED,
                record.shop_id,
                record.platform,
                f"expired at {record.expires_at.isoformat()}",
            )

    def _hydrate(self, record: CredentialRecord) -> Credential:
        shop = self.get_shop(record.shop_id)
        return Credential(
            shop_id=record.shop_id,
            platform=record.platform,
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            expires_at=record.expires_at,
            metadata=record.metadata,
            from_env=record.from_env,
            shop=shop,
        )
