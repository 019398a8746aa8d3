"""Provider vocabulary to canonical status and tier.

Every mapping is a plain lookup table so it can be enumerated in tests.
All functions are total: unknown statuses resolve to ``PENDING`` and
unknown price or product references resolve to the lowest tier.  Providers
add new values without notice, so availability wins over strictness here.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from billing_core.config import BillingSettings
from billing_core.errors import InvalidRequestError
from billing_core.models.enums import LOWEST_TIER, ProviderKind, SubscriptionStatus, Tier

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Status tables
# ---------------------------------------------------------------------------

STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.BILLING_RETRY,
    "unpaid": SubscriptionStatus.BILLING_RETRY,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "paused": SubscriptionStatus.PENDING,
}

# App Store Server API subscription status codes.
APP_STORE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "1": SubscriptionStatus.ACTIVE,
    "2": SubscriptionStatus.EXPIRED,
    "3": SubscriptionStatus.BILLING_RETRY,
    "4": SubscriptionStatus.BILLING_RETRY,
    "5": SubscriptionStatus.CANCELLED,
}

STATUS_TABLES: dict[ProviderKind, dict[str, SubscriptionStatus]] = {
    ProviderKind.STRIPE: STRIPE_STATUS_MAP,
    ProviderKind.APP_STORE: APP_STORE_STATUS_MAP,
}

# ---------------------------------------------------------------------------
# Tier tables
# ---------------------------------------------------------------------------

DEFAULT_PRICE_TIERS: dict[str, Tier] = {
    "price_discover_monthly": Tier.DISCOVER,
    "price_discover_yearly": Tier.DISCOVER,
    "price_connect_monthly": Tier.CONNECT,
    "price_connect_yearly": Tier.CONNECT,
    "price_community_monthly": Tier.COMMUNITY,
    "price_community_yearly": Tier.COMMUNITY,
}

# Legacy mobile product ids embed a tier keyword.  Checked in order, so the
# highest tier wins when a product id carries more than one keyword.
PRODUCT_KEYWORD_TIERS: tuple[tuple[str, Tier], ...] = (
    ("community", Tier.COMMUNITY),
    ("platinum", Tier.COMMUNITY),
    ("connect", Tier.CONNECT),
    ("gold", Tier.CONNECT),
    ("plus", Tier.CONNECT),
    ("discover", Tier.DISCOVER),
    ("basic", Tier.DISCOVER),
)


def map_provider_status(provider: ProviderKind, provider_status: str | int | None) -> SubscriptionStatus:
    """Translate a provider status value to :class:`SubscriptionStatus`.

    Parameters
    ----------
    provider:
        Which provider vocabulary *provider_status* belongs to.
    provider_status:
        Raw status string (Stripe) or status code (App Store).

    Returns
    -------
    SubscriptionStatus
        The mapped status, or ``PENDING`` when the value is not in the table.
    """
    table = STATUS_TABLES.get(provider, {})
    key = str(provider_status).strip().lower() if provider_status is not None else ""
    status = table.get(key)
    if status is None:
        logger.warning("Unmapped %s status %r; defaulting to pending", provider.value, provider_status)
        return SubscriptionStatus.PENDING
    return status


def price_tiers_for(settings: BillingSettings) -> dict[str, Tier]:
    """Build the price table from the configured Stripe price ids."""
    table = dict(DEFAULT_PRICE_TIERS)
    for plan_id, price_ref in settings.plan_prices().items():
        if price_ref:
            table[price_ref] = Tier(plan_id.split("_", 1)[0])
    return table


def map_price_ref_to_tier(price_ref: str | None, table: Mapping[str, Tier] | None = None) -> Tier:
    """Translate a Stripe price id to a :class:`Tier` by exact lookup."""
    tiers = table if table is not None else DEFAULT_PRICE_TIERS
    tier = tiers.get(price_ref or "")
    if tier is None:
        logger.warning("Unmapped price ref %r; defaulting to %s", price_ref, LOWEST_TIER.value)
        return LOWEST_TIER
    return tier


def map_product_id_to_tier(product_id: str | None) -> Tier:
    """Translate a legacy App Store product id by keyword containment."""
    lowered = (product_id or "").lower()
    for keyword, tier in PRODUCT_KEYWORD_TIERS:
        if keyword in lowered:
            return tier
    return LOWEST_TIER


def resolve_plan_price(plan_id: str, settings: BillingSettings) -> str:
    """Return the Stripe price id for a sellable *plan_id*.

    Raises
    ------
    InvalidRequestError
        If *plan_id* is not one of the configured plans.
    """
    price_ref = settings.plan_prices().get(plan_id)
    if not price_ref:
        raise InvalidRequestError("Invalid plan ID")
    return price_ref
