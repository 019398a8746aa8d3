"""Tier entitlements: feature matrix, access checks and consumables."""

from billing_core.entitlements.consumables import CONSUMABLE_PRODUCTS, ConsumableGrant, grant_for_product
from billing_core.entitlements.matrix import (
    TIER_MATRIX,
    Allowed,
    Denied,
    FeatureMatrix,
    effective_tier,
    has_tier_access,
    resolve,
    validate_access,
    validate_call_access,
    validate_call_duration,
)

__all__ = [
    "CONSUMABLE_PRODUCTS",
    "TIER_MATRIX",
    "Allowed",
    "ConsumableGrant",
    "Denied",
    "FeatureMatrix",
    "effective_tier",
    "grant_for_product",
    "has_tier_access",
    "resolve",
    "validate_access",
    "validate_call_access",
    "validate_call_duration",
]
