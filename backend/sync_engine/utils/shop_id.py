from __future__ import annotations

import re

SHOPIFY_DOMAIN_SUFFIX = ".myshopify.com"
_PROTOCOL_RE = re.compile(r"^https?://", re.IGNORECASE)


def normalize_shop_id(value: str) -> str:
    """
    任意店铺域名/ID → 规范 shop_id（Shopify 子域名，小写、不含点）。
      'https://Acme.myshopify.com/admin' -> 'acme'
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("Shop domain is required")

    lowered = _PROTOCOL_RE.sub("", raw.lower())
    domain = re.split(r"[/?#]", lowered)[0]
    if not domain:
        raise ValueError("Shop domain is invalid")

    if domain.endswith(SHOPIFY_DOMAIN_SUFFIX):
        domain = domain[: -len(SHOPIFY_DOMAIN_SUFFIX)]
    if not domain:
        raise ValueError("Shop domain is invalid")
    if "." in domain:
        raise ValueError("shop_id must be the Shopify subdomain (no dots)")
    return domain


def shop_id_to_domain(value: str) -> str:
    return f"{normalize_shop_id(value)}{SHOPIFY_DOMAIN_SUFFIX}"
