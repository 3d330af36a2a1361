from sync_engine.integrations.meta.ads_client import (
    BREAKDOWNS,
    ENTITY_FIELDS,
    INSIGHTS_FIELDS,
    MetaAdsClient,
)

__all__ = ["BREAKDOWNS", "ENTITY_FIELDS", "INSIGHTS_FIELDS", "MetaAdsClient"]
