from datetime import timedelta

import pytest
from sqlalchemy import update

from sync_engine.core.enums import Platform
from sync_engine.core.errors import CredentialError, CredentialErrorCode
from sync_engine.db.model.sync import ShopCredential
from sync_engine.services.credential_store import CredentialStore


@pytest.fixture
def store(session_factory, clock):
    return CredentialStore(session_factory, ttl_seconds=300, clock=clock, allow_env_fallback=False)


# ---------- 用例 1：正常解析，并顺带解析店铺信息 ----------
def test_get_returns_credential_with_shop_metadata(store, seed_credential):
    seed_credential("acme", "SHOPIFY", token="shpat_123", metadata={"scope": "read_orders"})

    cred = store.get("acme", Platform.SHOPIFY)
    assert cred.access_token == "shpat_123"
    assert cred.metadata == {"scope": "read_orders"}
    assert cred.shop is not None
    assert cred.shop.domain == "acme.myshopify.com"
    assert cred.shop.currency == "AUD"


# ---------- 用例 2：缓存命中期间 token 过期，仍然必须报 EXPIRED ----------
def test_cached_credential_that_expired_within_ttl_raises_expired(store, seed_credential, clock):
    seed_credential("acme", "META", expires_at=clock.now + timedelta(minutes=1))
    store.get("acme", Platform.META)

    clock.advance(minutes=2)   # 仍在 5 分钟 TTL 内
    with pytest.raises(CredentialError) as exc:
        store.get("acme", Platform.META)
    assert exc.value.error_code is CredentialErrorCode.EXPIRED
    assert exc.value.code == "CREDENTIAL_EXPIRED"


def test_fresh_fetch_of_expired_row_raises_expired(store, seed_credential, clock):
    seed_credential("acme", "META", expires_at=clock.now - timedelta(hours=1))
    with pytest.raises(CredentialError) as exc:
        store.get("acme", Platform.META)
    assert exc.value.error_code is CredentialErrorCode.EXPIRED


def test_missing_row_raises_not_found(store, seed_credential):
    seed_credential("acme", "SHOPIFY")
    with pytest.raises(CredentialError) as exc:
        store.get("acme", Platform.META)
    assert exc.value.error_code is CredentialErrorCode.NOT_FOUND


def test_empty_token_raises_invalid(store, seed_credential):
    seed_credential("acme", "SHOPIFY", token="   ")
    with pytest.raises(CredentialError) as exc:
        store.get("acme", Platform.SHOPIFY)
    assert exc.value.error_code is CredentialErrorCode.INVALID


def test_empty_and_expired_token_raises_invalid(store, seed_credential, clock):
    seed_credential("acme", "META", token="", expires_at=clock.now - timedelta(hours=1))
    with pytest.raises(CredentialError) as exc:
        store.get("acme", Platform.META)
    assert exc.value.error_code is CredentialErrorCode.INVALID


# ---------- 用例 3：TTL 内读缓存，invalidate 后重新读库 ----------
def test_cache_serves_until_invalidate(store, seed_credential, session_factory):
    seed_credential("acme", "SHOPIFY", token="old")
    assert store.get("acme", "COMMERCE").access_token == "old"

    with session_factory() as s:
        s.execute(update(ShopCredential).values(access_token="new"))
        s.commit()

    assert store.get("acme", Platform.SHOPIFY).access_token == "old"
    store.invalidate()
    assert store.get("acme", Platform.SHOPIFY).access_token == "new"


def test_cache_entry_refreshes_after_ttl(store, seed_credential, session_factory, clock):
    seed_credential("acme", "SHOPIFY", token="old")
    store.get("acme", Platform.SHOPIFY)
    with session_factory() as s:
        s.execute(update(ShopCredential).values(access_token="rotated"))
        s.commit()

    clock.advance(minutes=6)
    assert store.get("acme", Platform.SHOPIFY).access_token == "rotated"


def test_list_platforms_for_shop_skips_expired_and_empty(store, seed_credential, clock):
    seed_credential("acme", "SHOPIFY")
    seed_credential("acme", "META", expires_at=clock.now - timedelta(days=1))
    seed_credential("beta", "META", token="")
    seed_credential("gamma", "META", expires_at=clock.now + timedelta(days=30))

    assert store.list_platforms_for_shop("acme") == [Platform.SHOPIFY]
    assert store.list_platforms_for_shop("beta") == []
    assert store.list_platforms_for_shop("gamma") == [Platform.META]
    assert store.list_platforms_for_shop("unknown") == []


def test_get_shop_missing_row_is_invalid_without_fallback(store):
    with pytest.raises(CredentialError) as exc:
        store.get_shop("ghost")
    assert exc.value.error_code is CredentialErrorCode.INVALID


def test_env_fallback_synthesizes_shopify_credential(session_factory, clock, monkeypatch):
    from pydantic import SecretStr
    from sync_engine.core.config import settings

    monkeypatch.setattr(settings, "SHOPIFY_SHOP_DOMAIN", "https://Acme.myshopify.com")
    monkeypatch.setattr(settings, "SHOPIFY_ADMIN_ACCESS_TOKEN", SecretStr("env-token"))
    store = CredentialStore(session_factory, ttl_seconds=300, clock=clock, allow_env_fallback=True)

    cred = store.get("acme", Platform.SHOPIFY)
    assert cred.from_env is True
    assert cred.access_token == "env-token"
    assert cred.shop.domain == "acme.myshopify.com"

    # 域名与 shop_id 不一致时不套用
    with pytest.raises(CredentialError) as exc:
        store.get("other", Platform.SHOPIFY)
    assert exc.value.error_code is CredentialErrorCode.NOT_FOUND
