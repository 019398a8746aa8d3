"""Tests for the subscription endpoints.

Covers:
- Bearer authentication failures
- POST /api/v1/subscriptions/customer
- POST /api/v1/subscriptions and GET /api/v1/subscriptions/current
- PUT /api/v1/subscriptions/plan
- POST /api/v1/subscriptions/cancel and /reactivate
- GET /api/v1/subscriptions/entitlements
- POST /api/v1/subscriptions/features/validate
- POST /api/v1/subscriptions/usage/{kind}
- POST /api/v1/subscriptions/calls/validate and GET /api/v1/subscriptions/tiers/{tier}/access
- Provider error mapping (402, 503)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from billing_api.services.event_bus import EventType
from billing_core.errors import ProviderRejectedError, TransientProviderError
from billing_core.models.enums import ProviderKind

BASE = "/api/v1/subscriptions"


async def _subscribe(client, plan_id: str = "connect_monthly"):
    return await client.post(BASE, json={"plan_id": plan_id})


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_header(self, anon_client) -> None:
        resp = await anon_client.get(f"{BASE}/current")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing Authorization header"

    @pytest.mark.asyncio
    async def test_wrong_scheme(self, anon_client) -> None:
        resp = await anon_client.get(f"{BASE}/current", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Authorization header must use Bearer scheme"

    @pytest.mark.asyncio
    async def test_expired_token(self, anon_client, token_factory) -> None:
        token = token_factory(expires_in=-60)
        resp = await anon_client.get(f"{BASE}/current", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    async def test_token_signed_with_other_secret(self, anon_client, token_factory) -> None:
        token = token_factory(secret="not-the-api-secret-but-long-enough")
        resp = await anon_client.get(f"{BASE}/current", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"


# ---------------------------------------------------------------------------
# Customer and subscription creation
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_current_without_subscription(self, client) -> None:
        resp = await client.get(f"{BASE}/current")

        assert resp.status_code == 200
        data = resp.json()
        assert data["has_subscription"] is False
        assert data["user_id"] == "user-123"
        assert data["tier"] == "discover"
        assert data["effective_tier"] == "discover"

    @pytest.mark.asyncio
    async def test_create_customer_is_idempotent(self, client, mock_stripe) -> None:
        first = await client.post(f"{BASE}/customer", json={})
        second = await client.post(f"{BASE}/customer", json={})

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["status"] == "pending"
        mock_stripe.create_customer.assert_awaited_once_with("user-123", "user@example.com")

    @pytest.mark.asyncio
    async def test_create_subscription(self, client, mock_stripe, bus_events) -> None:
        resp = await _subscribe(client)

        assert resp.status_code == 201
        data = resp.json()
        assert data["has_subscription"] is True
        assert data["provider"] == "stripe"
        assert data["status"] == "active"
        assert data["tier"] == "connect"
        assert data["plan_id"] == "price_connect_monthly"
        assert data["subscription_id"] == "sub_test"
        assert data["client_secret"] == "pi_secret_123"
        mock_stripe.create_subscription.assert_awaited_once_with(
            "cus_test",
            "price_connect_monthly",
            payment_method_id=None,
            trial_days=None,
        )
        assert any(e.event_type == EventType.SUBSCRIPTION_CHANGED for e in bus_events)

    @pytest.mark.asyncio
    async def test_create_with_trial_and_payment_method(self, client, mock_stripe) -> None:
        resp = await client.post(
            BASE,
            json={"plan_id": "connect_monthly", "payment_method_id": "pm_card", "trial_days": 7},
        )
        assert resp.status_code == 201
        _, kwargs = mock_stripe.create_subscription.call_args
        assert kwargs == {"payment_method_id": "pm_card", "trial_days": 7}

    @pytest.mark.asyncio
    async def test_trial_days_out_of_range(self, client) -> None:
        resp = await client.post(BASE, json={"plan_id": "connect_monthly", "trial_days": 90})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_plan(self, client, mock_stripe) -> None:
        resp = await _subscribe(client, "gold_lifetime")

        assert resp.status_code == 400
        assert "Invalid plan ID" in resp.json()["detail"]
        mock_stripe.create_customer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_subscribed(self, client, mock_stripe) -> None:
        await _subscribe(client)
        resp = await _subscribe(client, "community_monthly")

        assert resp.status_code == 400
        assert resp.json()["detail"] == "User already has an active subscription"
        assert mock_stripe.create_subscription.await_count == 1

    @pytest.mark.asyncio
    async def test_card_declined_maps_to_402(self, client, mock_stripe) -> None:
        mock_stripe.create_subscription.side_effect = ProviderRejectedError("Your card was declined.")

        resp = await _subscribe(client)

        assert resp.status_code == 402
        assert resp.json()["detail"] == "Your card was declined."

    @pytest.mark.asyncio
    async def test_provider_timeout_maps_to_503(self, client, mock_stripe) -> None:
        mock_stripe.create_customer.side_effect = TransientProviderError("Stripe request timed out")

        resp = await _subscribe(client)

        assert resp.status_code == 503


# ---------------------------------------------------------------------------
# Plan changes and cancellation
# ---------------------------------------------------------------------------


class TestChangeAndCancel:
    @pytest.mark.asyncio
    async def test_change_plan(self, client, mock_stripe) -> None:
        await _subscribe(client)

        resp = await client.put(f"{BASE}/plan", json={"plan_id": "community_monthly"})

        assert resp.status_code == 200
        assert resp.json()["tier"] == "community"
        mock_stripe.change_price.assert_awaited_once_with("sub_test", "price_community_monthly")

    @pytest.mark.asyncio
    async def test_change_to_same_plan(self, client, mock_stripe) -> None:
        await _subscribe(client)

        resp = await client.put(f"{BASE}/plan", json={"plan_id": "connect_monthly"})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Subscription is already on this plan"
        mock_stripe.change_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_then_reactivate(self, client, mock_stripe) -> None:
        await _subscribe(client)

        cancelled = await client.post(f"{BASE}/cancel", json={})
        assert cancelled.status_code == 200
        assert cancelled.json()["cancel_at_period_end"] is True
        assert cancelled.json()["status"] == "active"
        assert cancelled.json()["tier"] == "connect"
        mock_stripe.set_cancel_at_period_end.assert_awaited_with("sub_test", True)

        reactivated = await client.post(f"{BASE}/reactivate")
        assert reactivated.status_code == 200
        assert reactivated.json()["cancel_at_period_end"] is False
        assert reactivated.json()["auto_renew"] is True
        mock_stripe.set_cancel_at_period_end.assert_awaited_with("sub_test", False)

    @pytest.mark.asyncio
    async def test_reactivate_without_scheduled_cancel(self, client) -> None:
        await _subscribe(client)
        resp = await client.post(f"{BASE}/reactivate")
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Subscription is not scheduled for cancellation"

    @pytest.mark.asyncio
    async def test_immediate_cancel_drops_to_lowest_tier(self, client, mock_stripe) -> None:
        await _subscribe(client)

        resp = await client.post(f"{BASE}/cancel", json={"immediate": True})

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "cancelled"
        assert data["tier"] == "discover"
        assert data["effective_tier"] == "discover"
        assert data["cancelled_at"] is not None
        mock_stripe.cancel_now.assert_awaited_once_with("sub_test")

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, client) -> None:
        resp = await client.post(f"{BASE}/cancel", json={})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "No active subscription"

    @pytest.mark.asyncio
    async def test_app_store_subscription_cannot_be_cancelled_here(
        self, client, mock_stripe, seed_subscription
    ) -> None:
        now = datetime.now(UTC)
        await seed_subscription(
            provider=ProviderKind.APP_STORE,
            provider_original_transaction_ref="1000",
            status="active",
            tier="connect",
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )

        resp = await client.post(f"{BASE}/cancel", json={})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "App Store subscriptions are managed from the device"
        mock_stripe.set_cancel_at_period_end.assert_not_awaited()


# ---------------------------------------------------------------------------
# Entitlements and usage
# ---------------------------------------------------------------------------


class TestEntitlements:
    @pytest.mark.asyncio
    async def test_entitlements_for_new_user(self, client) -> None:
        resp = await client.get(f"{BASE}/entitlements")

        assert resp.status_code == 200
        data = resp.json()
        assert data["tier"] == "discover"
        assert data["features"]["daily_likes"] == 10
        assert data["features"]["travel_mode"] is False
        assert data["boosts_remaining"] == 0

    @pytest.mark.asyncio
    async def test_entitlements_after_upgrade(self, client) -> None:
        await _subscribe(client)

        data = (await client.get(f"{BASE}/entitlements")).json()

        assert data["tier"] == "connect"
        assert data["status"] == "active"
        assert data["features"]["daily_likes"] == 50
        assert data["features"]["travel_mode"] is True
        assert data["boosts_remaining"] == 3
        assert data["super_likes_remaining"] == 3

    @pytest.mark.asyncio
    async def test_feature_denied_for_lowest_tier(self, client) -> None:
        resp = await client.post(f"{BASE}/features/validate", json={"feature": "travel_mode"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["allowed"] is False
        assert data["upgrade_required"] is True
        assert data["required_tier"] == "connect"
        assert data["reason"] == "Travel mode requires a higher subscription tier"

    @pytest.mark.asyncio
    async def test_feature_allowed_after_upgrade(self, client) -> None:
        await _subscribe(client)
        resp = await client.post(f"{BASE}/features/validate", json={"feature": "travel_mode"})
        assert resp.json()["allowed"] is True

    @pytest.mark.asyncio
    async def test_unknown_feature(self, client) -> None:
        resp = await client.post(f"{BASE}/features/validate", json={"feature": "teleport"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Unknown feature: teleport"

    @pytest.mark.asyncio
    async def test_like_is_counted(self, client) -> None:
        resp = await client.post(f"{BASE}/usage/like")

        assert resp.status_code == 200
        assert resp.json()["allowed"] is True
        assert resp.json()["daily_likes_used"] == 1

    @pytest.mark.asyncio
    async def test_boost_denied_without_balance(self, client) -> None:
        resp = await client.post(f"{BASE}/usage/boost")

        assert resp.status_code == 200
        assert resp.json()["allowed"] is False
        assert resp.json()["reason"] == "No boosts remaining"

    @pytest.mark.asyncio
    async def test_boost_debited_after_upgrade(self, client) -> None:
        await _subscribe(client)
        resp = await client.post(f"{BASE}/usage/boost")
        assert resp.json()["allowed"] is True
        assert resp.json()["boosts_remaining"] == 2

    @pytest.mark.asyncio
    async def test_unknown_usage_kind(self, client) -> None:
        resp = await client.post(f"{BASE}/usage/rewind")
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Call and tier access
# ---------------------------------------------------------------------------


class TestCallAccess:
    @pytest.mark.asyncio
    async def test_calls_denied_on_lowest_tier(self, client) -> None:
        resp = await client.post(f"{BASE}/calls/validate", json={"call_type": "audio"})

        assert resp.status_code == 200
        assert resp.json() == {
            "allowed": False,
            "reason": "Audio calls require Connect subscription or higher",
            "upgrade_required": True,
            "required_tier": "connect",
            "time_remaining": None,
        }

    @pytest.mark.asyncio
    async def test_audio_allowed_video_denied_on_connect(self, client) -> None:
        await _subscribe(client)

        audio = (await client.post(f"{BASE}/calls/validate", json={"call_type": "audio"})).json()
        video = (await client.post(f"{BASE}/calls/validate", json={"call_type": "video"})).json()

        assert audio["allowed"] is True
        assert video["allowed"] is False
        assert video["reason"] == "Video calls require Community subscription"
        assert video["required_tier"] == "community"

    @pytest.mark.asyncio
    async def test_running_call_reports_time_remaining(self, client) -> None:
        await _subscribe(client)

        resp = await client.post(f"{BASE}/calls/validate", json={"call_type": "audio", "current_minutes": 10})

        assert resp.json()["allowed"] is True
        assert resp.json()["time_remaining"] == 20

    @pytest.mark.asyncio
    async def test_running_call_over_limit(self, client) -> None:
        await _subscribe(client)

        resp = await client.post(f"{BASE}/calls/validate", json={"call_type": "audio", "current_minutes": 30})

        assert resp.json()["allowed"] is False
        assert resp.json()["reason"] == "Call duration limit (30 minutes) reached"

    @pytest.mark.asyncio
    async def test_lapsed_billing_retry_loses_calls(self, client, seed_subscription) -> None:
        now = datetime.now(UTC)
        await seed_subscription(
            provider_customer_ref="cus_test",
            provider_subscription_ref="sub_test",
            status="billing_retry",
            tier="community",
            current_period_start=now - timedelta(days=31),
            current_period_end=now - timedelta(days=1),
        )

        resp = await client.post(f"{BASE}/calls/validate", json={"call_type": "video"})

        assert resp.json()["allowed"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"call_type": "hologram"}, {"call_type": "audio", "current_minutes": -1}])
    async def test_invalid_call_request(self, client, body: dict) -> None:
        resp = await client.post(f"{BASE}/calls/validate", json=body)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_tier_access(self, client) -> None:
        await _subscribe(client)

        connect = (await client.get(f"{BASE}/tiers/connect/access")).json()
        community = (await client.get(f"{BASE}/tiers/community/access")).json()

        assert connect == {"tier": "connect", "required_tier": "connect", "has_access": True}
        assert community == {"tier": "connect", "required_tier": "community", "has_access": False}

    @pytest.mark.asyncio
    async def test_unknown_tier(self, client) -> None:
        resp = await client.get(f"{BASE}/tiers/platinum/access")
        assert resp.status_code == 422
