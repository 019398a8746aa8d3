"""Consumable products and per-action usage limits."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from billing_core.entitlements.matrix import UNLIMITED, FeatureMatrix
from billing_core.errors import InvalidRequestError
from billing_core.models.enums import ConsumableKind


class ConsumableGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ConsumableKind
    quantity: int


CONSUMABLE_PRODUCTS: dict[str, ConsumableGrant] = {
    "com.kindred.boost.pack5": ConsumableGrant(kind=ConsumableKind.BOOST, quantity=5),
    "com.kindred.boost.pack10": ConsumableGrant(kind=ConsumableKind.BOOST, quantity=10),
    "com.kindred.superlike.pack5": ConsumableGrant(kind=ConsumableKind.SUPER_LIKE, quantity=5),
    "com.kindred.superlike.pack10": ConsumableGrant(kind=ConsumableKind.SUPER_LIKE, quantity=10),
}


def grant_for_product(product_id: str) -> ConsumableGrant:
    """Return the grant for a consumable *product_id*.

    Raises
    ------
    InvalidRequestError
        If the product is not a known consumable.
    """
    grant = CONSUMABLE_PRODUCTS.get(product_id)
    if grant is None:
        raise InvalidRequestError(f"Unknown product: {product_id}")
    return grant


def daily_limit(kind: ConsumableKind, matrix: FeatureMatrix) -> int:
    """Daily cap for *kind*; balances bound super likes and boosts instead."""
    if kind == ConsumableKind.LIKE:
        return matrix.daily_likes
    return UNLIMITED
