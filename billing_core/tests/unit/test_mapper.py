"""Tests for billing_core.vocabulary.mapper

Covers:
- Status tables: every documented Stripe and App Store value maps, unknowns default to pending
- Price table: every configured price id maps, unknown ids fall back to the lowest tier
- Legacy product ids: keyword containment with the highest tier winning
- Plan id to price id resolution
"""

from __future__ import annotations

import pytest
from billing_core.config import load_settings
from billing_core.errors import InvalidRequestError
from billing_core.models.enums import LOWEST_TIER, ProviderKind, SubscriptionStatus, Tier
from billing_core.vocabulary.mapper import (
    APP_STORE_STATUS_MAP,
    DEFAULT_PRICE_TIERS,
    STRIPE_STATUS_MAP,
    map_price_ref_to_tier,
    map_product_id_to_tier,
    map_provider_status,
    price_tiers_for,
    resolve_plan_price,
)

# ---------------------------------------------------------------------------
# Status tables
# ---------------------------------------------------------------------------

STRIPE_DOCUMENTED_STATUSES = [
    "active",
    "trialing",
    "past_due",
    "unpaid",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "paused",
]


class TestMapProviderStatus:
    @pytest.mark.parametrize("raw", STRIPE_DOCUMENTED_STATUSES)
    def test_every_stripe_status_is_in_the_table(self, raw: str) -> None:
        assert raw in STRIPE_STATUS_MAP
        assert isinstance(map_provider_status(ProviderKind.STRIPE, raw), SubscriptionStatus)

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.BILLING_RETRY),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("incomplete_expired", SubscriptionStatus.EXPIRED),
        ],
    )
    def test_stripe_values(self, raw: str, expected: SubscriptionStatus) -> None:
        assert map_provider_status(ProviderKind.STRIPE, raw) == expected

    def test_stripe_lookup_ignores_case_and_whitespace(self) -> None:
        assert map_provider_status(ProviderKind.STRIPE, " Active ") == SubscriptionStatus.ACTIVE

    @pytest.mark.parametrize("raw", ["1", 1, "2", "3", "4", "5"])
    def test_app_store_codes(self, raw: str | int) -> None:
        assert str(raw) in APP_STORE_STATUS_MAP
        assert map_provider_status(ProviderKind.APP_STORE, raw) != SubscriptionStatus.PENDING

    def test_app_store_active_and_revoked(self) -> None:
        assert map_provider_status(ProviderKind.APP_STORE, 1) == SubscriptionStatus.ACTIVE
        assert map_provider_status(ProviderKind.APP_STORE, 5) == SubscriptionStatus.CANCELLED

    @pytest.mark.parametrize(
        ("provider", "raw"),
        [
            (ProviderKind.STRIPE, "frozen_by_regulator"),
            (ProviderKind.STRIPE, None),
            (ProviderKind.STRIPE, ""),
            (ProviderKind.APP_STORE, 99),
            (ProviderKind.LOCAL, "active"),
        ],
    )
    def test_unknown_values_default_to_pending(self, provider: ProviderKind, raw: str | int | None) -> None:
        assert map_provider_status(provider, raw) == SubscriptionStatus.PENDING


# ---------------------------------------------------------------------------
# Tier tables
# ---------------------------------------------------------------------------


class TestMapPriceRefToTier:
    @pytest.mark.parametrize(("price_ref", "tier"), list(DEFAULT_PRICE_TIERS.items()))
    def test_every_default_price_maps(self, price_ref: str, tier: Tier) -> None:
        assert map_price_ref_to_tier(price_ref) == tier

    def test_unknown_price_falls_back_to_lowest_tier(self) -> None:
        assert map_price_ref_to_tier("price_from_the_future") == LOWEST_TIER
        assert map_price_ref_to_tier(None) == LOWEST_TIER

    def test_no_substring_matching_for_prices(self) -> None:
        assert map_price_ref_to_tier("price_community_monthly_v2") == LOWEST_TIER

    def test_configured_price_ids_extend_the_table(self) -> None:
        settings = load_settings(price_connect_monthly="price_1PqXyZ", price_community_yearly="price_9AbCd")
        table = price_tiers_for(settings)
        assert map_price_ref_to_tier("price_1PqXyZ", table) == Tier.CONNECT
        assert map_price_ref_to_tier("price_9AbCd", table) == Tier.COMMUNITY

    def test_every_sold_plan_maps_to_its_tier(self) -> None:
        settings = load_settings()
        table = price_tiers_for(settings)
        for plan_id, price_ref in settings.plan_prices().items():
            assert map_price_ref_to_tier(price_ref, table).value == plan_id.split("_", 1)[0]


class TestMapProductIdToTier:
    @pytest.mark.parametrize(
        ("product_id", "tier"),
        [
            ("com.kindred.community.monthly", Tier.COMMUNITY),
            ("com.kindred.platinum.yearly", Tier.COMMUNITY),
            ("com.kindred.connect.monthly", Tier.CONNECT),
            ("com.kindred.gold.monthly", Tier.CONNECT),
            ("com.kindred.plus", Tier.CONNECT),
            ("com.kindred.discover.monthly", Tier.DISCOVER),
            ("com.kindred.mystery", Tier.DISCOVER),
        ],
    )
    def test_keywords(self, product_id: str, tier: Tier) -> None:
        assert map_product_id_to_tier(product_id) == tier

    def test_highest_keyword_wins(self) -> None:
        assert map_product_id_to_tier("com.kindred.platinum_plus") == Tier.COMMUNITY

    def test_case_insensitive(self) -> None:
        assert map_product_id_to_tier("COM.KINDRED.CONNECT") == Tier.CONNECT

    def test_missing_product_is_lowest_tier(self) -> None:
        assert map_product_id_to_tier(None) == LOWEST_TIER


class TestResolvePlanPrice:
    def test_known_plan(self) -> None:
        settings = load_settings(price_connect_yearly="price_connect_y")
        assert resolve_plan_price("connect_yearly", settings) == "price_connect_y"

    def test_unknown_plan_raises(self) -> None:
        with pytest.raises(InvalidRequestError, match="Invalid plan ID"):
            resolve_plan_price("diamond_monthly", load_settings())
