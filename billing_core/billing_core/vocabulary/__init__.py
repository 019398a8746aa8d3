"""Provider vocabulary mapping."""

from billing_core.vocabulary.mapper import (
    map_price_ref_to_tier,
    map_product_id_to_tier,
    map_provider_status,
    price_tiers_for,
    resolve_plan_price,
)

__all__ = [
    "map_price_ref_to_tier",
    "map_product_id_to_tier",
    "map_provider_status",
    "price_tiers_for",
    "resolve_plan_price",
]
