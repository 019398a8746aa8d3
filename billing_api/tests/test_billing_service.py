"""Tests for BillingService outside the HTTP layer.

Covers:
- subscription_info rendering
- Resubscribing after a terminal status
- Reactivation guards
- Plan changes on App Store subscriptions
- Event bus notification on applied transitions
- Local-origin events are stamped in whole seconds
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from billing_api.services.billing_service import BillingService, subscription_info
from billing_api.services.event_bus import EventType
from billing_core.errors import InvalidRequestError, NotFoundError
from billing_core.models.enums import ProviderKind, SubscriptionStatus, Tier
from billing_core.models.events import SubscriptionDeleted
from billing_core.reconciliation.processor import EventProcessor
from billing_core.state.database import session_scope
from billing_core.state.repository import SubscriptionRepository


@pytest.fixture()
def service(session_factory, billing_settings, mock_stripe, mock_app_store, event_bus) -> BillingService:
    return BillingService(
        session_factory,
        billing_settings,
        stripe_client=mock_stripe,
        app_store_client=mock_app_store,
        event_bus=event_bus,
    )


class TestSubscriptionInfo:
    def test_missing_row_renders_lowest_tier(self) -> None:
        info = subscription_info("user-1", None)
        assert info == {
            "has_subscription": False,
            "user_id": "user-1",
            "status": "pending",
            "tier": "discover",
            "effective_tier": "discover",
        }


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_resubscribe_after_cancellation(self, service, seed_subscription, mock_stripe) -> None:
        await seed_subscription(
            "user-1",
            provider_customer_ref="cus_test",
            provider_subscription_ref="sub_old",
            status="cancelled",
            tier="discover",
        )

        info = await service.create_subscription("user-1", "connect_monthly")

        assert info["status"] == "active"
        assert info["tier"] == "connect"
        assert info["subscription_id"] == "sub_test"
        mock_stripe.create_customer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reactivate_after_period_end(self, service, seed_subscription, mock_stripe) -> None:
        now = datetime.now(UTC)
        await seed_subscription(
            "user-1",
            provider_customer_ref="cus_test",
            provider_subscription_ref="sub_test",
            status="active",
            tier="connect",
            cancel_at_period_end=True,
            auto_renew=False,
            current_period_start=now - timedelta(days=31),
            current_period_end=now - timedelta(days=1),
        )

        with pytest.raises(InvalidRequestError, match="period has already ended"):
            await service.reactivate("user-1")
        mock_stripe.set_cancel_at_period_end.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_customer_without_subscription_cannot_cancel(self, service) -> None:
        await service.create_customer("user-1")

        with pytest.raises(NotFoundError, match="No active subscription"):
            await service.cancel("user-1")

    @pytest.mark.asyncio
    async def test_app_store_plan_change_is_rejected(self, service, seed_subscription, mock_stripe) -> None:
        await seed_subscription(
            "user-1",
            provider=ProviderKind.APP_STORE,
            provider_original_transaction_ref="1000",
            status="active",
            tier="connect",
        )

        with pytest.raises(InvalidRequestError, match="managed from the device"):
            await service.change_plan("user-1", "community_monthly")
        mock_stripe.change_price.assert_not_awaited()


class TestEventBus:
    @pytest.mark.asyncio
    async def test_applied_transition_is_published(self, service, bus_events) -> None:
        await service.create_subscription("user-1", "connect_monthly")

        changed = [e for e in bus_events if e.event_type == EventType.SUBSCRIPTION_CHANGED]
        assert [e.user_id for e in changed] == ["user-1", "user-1"]
        assert changed[-1].data["status"] == "active"
        assert changed[-1].data["previous_status"] == "pending"

    @pytest.mark.asyncio
    async def test_unchanged_transition_is_not_published(self, service, bus_events) -> None:
        await service.create_customer("user-1")
        emitted = len(bus_events)

        await service.create_customer("user-1")

        assert len(bus_events) == emitted

    @pytest.mark.asyncio
    async def test_service_without_bus(self, session_factory, billing_settings, mock_stripe, mock_app_store) -> None:
        service = BillingService(
            session_factory,
            billing_settings,
            stripe_client=mock_stripe,
            app_store_client=mock_app_store,
        )
        info = await service.create_subscription("user-1", "connect_monthly")
        assert info["tier"] == "connect"


class TestLocalTimestamps:
    @pytest.mark.asyncio
    async def test_local_stamps_have_whole_seconds(self, service, session_factory) -> None:
        await service.create_subscription("user-1", "connect_monthly")

        async with session_scope(session_factory) as session:
            row = await SubscriptionRepository(session).get_by_user("user-1")
        assert row.status_event_at.microsecond == 0
        assert row.period_event_at.microsecond == 0

    @pytest.mark.asyncio
    async def test_provider_event_in_same_second_is_applied(
        self, service, session_factory, billing_settings
    ) -> None:
        await service.create_subscription("user-1", "connect_monthly")
        async with session_scope(session_factory) as session:
            stamped = (await SubscriptionRepository(session).get_by_user("user-1")).status_event_at

        delta = await EventProcessor(session_factory, billing_settings).apply_local(
            "user-1",
            SubscriptionDeleted(
                provider=ProviderKind.STRIPE,
                event_ref="evt_deleted",
                occurred_at=stamped,
                owner_ref="cus_test",
            ),
        )

        assert delta.status == SubscriptionStatus.CANCELLED
        assert delta.tier == Tier.DISCOVER
