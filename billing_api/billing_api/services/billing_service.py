"""User-initiated billing operations.

Every subscription change made on behalf of a user is expressed as a
normalized event and applied through the same state machine that handles
provider notifications.  Provider calls happen first; the local transition
is applied only once the provider accepted the change.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.config import BillingSettings
from billing_core.entitlements.consumables import CONSUMABLE_PRODUCTS, grant_for_product
from billing_core.entitlements.matrix import (
    AccessDecision,
    Allowed,
    effective_tier,
    has_tier_access,
    resolve,
    validate_access,
    validate_call_access,
    validate_call_duration,
)
from billing_core.entitlements.service import EntitlementService
from billing_core.errors import InvalidRequestError, NotFoundError, PayloadError
from billing_core.ingestion.app_store import normalize_receipt
from billing_core.ingestion.stripe_events import subscription_snapshot
from billing_core.ledger.ledger import BillingLedger
from billing_core.models.enums import (
    LOWEST_TIER,
    TERMINAL_STATUSES,
    ConsumableKind,
    ProviderKind,
    SubscriptionStatus,
    Tier,
    TransactionType,
)
from billing_core.models.events import (
    CancelAtPeriodEndRequested,
    CustomerLinked,
    ImmediateCancelRequested,
    NormalizedEvent,
    ReactivationRequested,
    local_timestamp,
)
from billing_core.reconciliation.processor import EventProcessor
from billing_core.reconciliation.state_machine import ApplyResult, SubscriptionDelta
from billing_core.state.database import session_scope
from billing_core.state.repository import (
    PaymentMethodRepository,
    ProviderTransactionRepository,
    SubscriptionRepository,
)
from billing_core.state.tables import BillingLedgerTable, PaymentMethodTable, SubscriptionTable
from billing_core.vocabulary.mapper import price_tiers_for, resolve_plan_price

from billing_api.services.app_store_client import AppStoreClient
from billing_api.services.event_bus import EventBus, EventType
from billing_api.services.stripe_client import StripeClient

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def subscription_info(user_id: str, row: SubscriptionTable | None) -> dict[str, Any]:
    """Render a subscription row (or its absence) for the API."""
    if row is None:
        return {
            "has_subscription": False,
            "user_id": user_id,
            "status": SubscriptionStatus.PENDING.value,
            "tier": LOWEST_TIER.value,
            "effective_tier": LOWEST_TIER.value,
        }
    return {
        "has_subscription": row.status != SubscriptionStatus.PENDING.value,
        "user_id": user_id,
        "provider": row.provider,
        "status": row.status,
        "tier": row.tier,
        "effective_tier": effective_tier(row.tier, row.status, row.current_period_end).value,
        "plan_id": row.plan_ref,
        "subscription_id": row.provider_subscription_ref,
        "current_period_start": _iso(row.current_period_start),
        "current_period_end": _iso(row.current_period_end),
        "cancel_at_period_end": row.cancel_at_period_end,
        "cancelled_at": _iso(row.cancelled_at),
        "auto_renew": row.auto_renew,
        "is_trial": row.is_trial,
    }


def access_info(decision: AccessDecision) -> dict[str, Any]:
    if isinstance(decision, Allowed):
        return {"allowed": True, "time_remaining": decision.time_remaining}
    return {
        "allowed": False,
        "reason": decision.reason,
        "upgrade_required": decision.upgrade_required,
        "required_tier": decision.required_tier.value if decision.required_tier else None,
    }


def payment_method_info(row: PaymentMethodTable) -> dict[str, Any]:
    return {
        "id": row.provider_payment_method_ref,
        "brand": row.brand,
        "last4": row.last4,
        "exp_month": row.exp_month,
        "exp_year": row.exp_year,
        "is_default": row.is_default,
    }


def ledger_entry_info(row: BillingLedgerTable) -> dict[str, Any]:
    return {
        "invoice_id": row.provider_invoice_ref,
        "entry_type": row.entry_type,
        "amount": row.amount,
        "currency": row.currency,
        "status": row.status,
        "description": row.description,
        "period_start": _iso(row.period_start),
        "period_end": _iso(row.period_end),
        "hosted_invoice_url": row.hosted_invoice_url,
        "invoice_pdf_url": row.invoice_pdf_url,
        "created_at": _iso(row.created_at),
    }


class BillingService:
    """Billing operations for authenticated users.

    Parameters
    ----------
    session_factory:
        Factory for per-operation sessions.
    settings:
        Billing settings.
    stripe_client:
        Outbound Stripe wrapper.
    app_store_client:
        Outbound ``verifyReceipt`` client.
    event_bus:
        Optional bus notified about subscription changes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: BillingSettings,
        *,
        stripe_client: StripeClient,
        app_store_client: AppStoreClient,
        event_bus: EventBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._stripe = stripe_client
        self._app_store = app_store_client
        self._bus = event_bus
        self._processor = EventProcessor(session_factory, settings)
        self._price_tiers = price_tiers_for(settings)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def get_subscription(self, user_id: str) -> dict[str, Any]:
        row = await self._load(user_id)
        return subscription_info(user_id, row)

    async def create_customer(self, user_id: str, email: str | None = None) -> dict[str, Any]:
        """Create the Stripe customer for *user_id* unless one is linked.

        The canonical row is created ``pending`` at the lowest tier.
        """
        row = await self._load(user_id)
        if row is not None and row.provider_customer_ref:
            return subscription_info(user_id, row)

        customer = await self._stripe.create_customer(user_id, email)
        await self._apply(
            user_id,
            CustomerLinked(
                provider=ProviderKind.STRIPE,
                event_ref=f"local:customer:{customer['id']}",
                occurred_at=local_timestamp(),
                owner_ref=customer["id"],
            ),
        )
        logger.info("Linked Stripe customer %s to user=%s", customer["id"], user_id)
        return await self.get_subscription(user_id)

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        *,
        payment_method_id: str | None = None,
        trial_days: int | None = None,
        email: str | None = None,
    ) -> dict[str, Any]:
        """Start a Stripe subscription on *plan_id*.

        Raises
        ------
        InvalidRequestError
            If the plan id is unknown or the user already subscribes.
        """
        price_id = resolve_plan_price(plan_id, self._settings)
        row = await self._load(user_id)
        if row is not None and row.provider_subscription_ref and not self._is_terminal(row):
            raise InvalidRequestError("User already has an active subscription")
        if row is None or not row.provider_customer_ref:
            await self.create_customer(user_id, email)
            row = await self._load(user_id)
        assert row is not None and row.provider_customer_ref is not None  # noqa: S101

        subscription = await self._stripe.create_subscription(
            row.provider_customer_ref,
            price_id,
            payment_method_id=payment_method_id,
            trial_days=trial_days,
        )
        await self._apply(
            user_id,
            subscription_snapshot(
                subscription,
                self._price_tiers,
                event_ref=f"local:subscription:{subscription['id']}",
                occurred_at=local_timestamp(),
            ),
        )
        info = await self.get_subscription(user_id)
        latest_invoice = subscription.get("latest_invoice") or {}
        payment_intent = latest_invoice.get("payment_intent") if isinstance(latest_invoice, dict) else None
        if isinstance(payment_intent, dict):
            info["client_secret"] = payment_intent.get("client_secret")
        return info

    async def change_plan(self, user_id: str, plan_id: str) -> dict[str, Any]:
        price_id = resolve_plan_price(plan_id, self._settings)
        row = await self._require_stripe_subscription(user_id)
        assert row.provider_subscription_ref is not None  # noqa: S101
        if row.plan_ref == price_id:
            raise InvalidRequestError("Subscription is already on this plan")

        subscription = await self._stripe.change_price(row.provider_subscription_ref, price_id)
        await self._apply(
            user_id,
            subscription_snapshot(
                subscription,
                self._price_tiers,
                event_ref=f"local:plan:{subscription['id']}:{price_id}",
                occurred_at=local_timestamp(),
            ),
        )
        return await self.get_subscription(user_id)

    async def cancel(self, user_id: str, *, immediate: bool = False) -> dict[str, Any]:
        """Cancel now, or at the end of the current period."""
        row = await self._require_stripe_subscription(user_id)
        assert row.provider_subscription_ref is not None  # noqa: S101
        now = local_timestamp()
        event: NormalizedEvent
        if immediate:
            await self._stripe.cancel_now(row.provider_subscription_ref)
            event = ImmediateCancelRequested(
                provider=ProviderKind.LOCAL,
                event_ref=f"local:cancel:{row.provider_subscription_ref}",
                occurred_at=now,
            )
        else:
            await self._stripe.set_cancel_at_period_end(row.provider_subscription_ref, True)
            event = CancelAtPeriodEndRequested(
                provider=ProviderKind.LOCAL,
                event_ref=f"local:cancel-at-period-end:{row.provider_subscription_ref}",
                occurred_at=now,
            )
        await self._apply(user_id, event)
        return await self.get_subscription(user_id)

    async def reactivate(self, user_id: str) -> dict[str, Any]:
        """Undo a scheduled cancellation before the period ends.

        Raises
        ------
        InvalidRequestError
            If nothing is scheduled or the period already ended.
        """
        row = await self._require_stripe_subscription(user_id)
        assert row.provider_subscription_ref is not None  # noqa: S101
        if not row.cancel_at_period_end:
            raise InvalidRequestError("Subscription is not scheduled for cancellation")
        now = local_timestamp()
        if row.current_period_end is not None and row.current_period_end <= now:
            raise InvalidRequestError("Subscription period has already ended")

        await self._stripe.set_cancel_at_period_end(row.provider_subscription_ref, False)
        await self._apply(
            user_id,
            ReactivationRequested(
                provider=ProviderKind.LOCAL,
                event_ref=f"local:reactivate:{row.provider_subscription_ref}",
                occurred_at=now,
            ),
        )
        return await self.get_subscription(user_id)

    # ------------------------------------------------------------------
    # Entitlements and usage
    # ------------------------------------------------------------------

    async def get_entitlements(self, user_id: str) -> dict[str, Any]:
        row = await self._load(user_id)
        status = SubscriptionStatus(row.status) if row else SubscriptionStatus.PENDING
        tier = effective_tier(row.tier, row.status, row.current_period_end) if row else LOWEST_TIER
        async with session_scope(self._session_factory) as session:
            snapshot = await EntitlementService(session).snapshot(user_id)
            return {
                "tier": tier.value,
                "status": status.value,
                "features": resolve(tier).model_dump(mode="json"),
                "boosts_remaining": snapshot.boosts_remaining,
                "super_likes_remaining": snapshot.super_likes_remaining,
                "daily_likes_used": snapshot.daily_likes_used,
                "daily_super_likes_used": snapshot.daily_super_likes_used,
            }

    async def validate_feature(self, user_id: str, feature: str) -> dict[str, Any]:
        tier = await self._effective_tier(user_id)
        return access_info(validate_access(tier, feature))

    async def validate_call(
        self,
        user_id: str,
        call_type: str,
        current_minutes: int | None = None,
    ) -> dict[str, Any]:
        """Check a call of *call_type*, and its duration once it is running."""
        tier = await self._effective_tier(user_id)
        decision = validate_call_access(tier, call_type)
        if isinstance(decision, Allowed) and current_minutes is not None:
            decision = validate_call_duration(tier, current_minutes)
        return access_info(decision)

    async def check_tier_access(self, user_id: str, required: Tier) -> dict[str, Any]:
        tier = await self._effective_tier(user_id)
        return {
            "tier": tier.value,
            "required_tier": required.value,
            "has_access": has_tier_access(tier, required),
        }

    async def consume(self, user_id: str, kind: ConsumableKind) -> dict[str, Any]:
        tier = await self._effective_tier(user_id)
        async with session_scope(self._session_factory) as session:
            result = await EntitlementService(session).consume(user_id, kind, tier)
        if not result.allowed:
            logger.info("User %s denied %s: %s", user_id, kind.value, result.reason)
        return result.model_dump()

    # ------------------------------------------------------------------
    # Payment methods and history
    # ------------------------------------------------------------------

    async def list_payment_methods(self, user_id: str) -> list[dict[str, Any]]:
        async with session_scope(self._session_factory) as session:
            rows = await PaymentMethodRepository(session).list_for_user(user_id)
            return [payment_method_info(r) for r in rows]

    async def attach_payment_method(
        self,
        user_id: str,
        payment_method_id: str,
        *,
        set_default: bool = False,
    ) -> dict[str, Any]:
        row = await self._load(user_id)
        if row is None or not row.provider_customer_ref:
            raise NotFoundError("No billing customer for this user")

        pm = await self._stripe.attach_payment_method(payment_method_id, row.provider_customer_ref)
        card = pm.get("card") or {}
        async with session_scope(self._session_factory) as session:
            repo = PaymentMethodRepository(session)
            await repo.upsert(
                user_id=user_id,
                payment_method_ref=payment_method_id,
                brand=card.get("brand"),
                last4=card.get("last4"),
                exp_month=card.get("exp_month"),
                exp_year=card.get("exp_year"),
            )
        if set_default:
            return await self.set_default_payment_method(user_id, payment_method_id)
        async with session_scope(self._session_factory) as session:
            stored = await PaymentMethodRepository(session).get(payment_method_id)
            assert stored is not None  # noqa: S101
            return payment_method_info(stored)

    async def detach_payment_method(self, user_id: str, payment_method_id: str) -> None:
        await self._require_owned_method(user_id, payment_method_id)
        await self._stripe.detach_payment_method(payment_method_id)
        async with session_scope(self._session_factory) as session:
            await PaymentMethodRepository(session).delete(payment_method_id)
        logger.info("Detached payment method %s for user=%s", payment_method_id, user_id)

    async def set_default_payment_method(self, user_id: str, payment_method_id: str) -> dict[str, Any]:
        await self._require_owned_method(user_id, payment_method_id)
        row = await self._load(user_id)
        if row is None or not row.provider_customer_ref:
            raise NotFoundError("No billing customer for this user")
        await self._stripe.set_default_payment_method(row.provider_customer_ref, payment_method_id)
        async with session_scope(self._session_factory) as session:
            repo = PaymentMethodRepository(session)
            await repo.set_default(user_id, payment_method_id)
            stored = await repo.get(payment_method_id)
            assert stored is not None  # noqa: S101
            return payment_method_info(stored)

    async def billing_history(self, user_id: str, *, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        async with session_scope(self._session_factory) as session:
            ledger = BillingLedger(session, default_currency=self._settings.default_currency)
            rows, total = await ledger.history(user_id, limit=limit, offset=offset)
            return {"entries": [ledger_entry_info(r) for r in rows], "total": total}

    # ------------------------------------------------------------------
    # App Store purchases
    # ------------------------------------------------------------------

    async def validate_app_store_receipt(self, user_id: str, receipt_data: str) -> dict[str, Any]:
        """Verify a subscription receipt and reconcile the canonical row.

        Raises
        ------
        ProviderRejectedError
            If Apple rejects the receipt.
        InvalidRequestError
            If the receipt has no subscription or belongs to another user.
        """
        response = await self._app_store.verify_receipt(receipt_data)
        entries = response.get("latest_receipt_info") or []
        if not entries:
            raise InvalidRequestError("No receipt info found")
        latest = max(entries, key=lambda e: int(e.get("expires_date_ms") or 0))
        if latest.get("product_id") in CONSUMABLE_PRODUCTS:
            raise InvalidRequestError("Receipt is for a consumable product, not a subscription")

        event = normalize_receipt(latest)
        try:
            await self._apply(user_id, event)
        except PayloadError as exc:
            raise InvalidRequestError("Receipt belongs to another account") from exc

        async with session_scope(self._session_factory) as session:
            await ProviderTransactionRepository(session).record(
                transaction_ref=latest["transaction_id"],
                user_id=user_id,
                product_ref=latest.get("product_id") or "",
                transaction_type=TransactionType.SUBSCRIPTION,
                original_transaction_ref=latest.get("original_transaction_id"),
            )
        return await self.get_subscription(user_id)

    async def record_consumable_purchase(
        self,
        user_id: str,
        product_id: str,
        transaction_id: str,
        receipt_data: str,
    ) -> dict[str, Any]:
        """Verify a consumable purchase and credit the user's balance once.

        Raises
        ------
        InvalidRequestError
            If the product is unknown, the transaction was already
            processed, or the receipt does not contain it.
        """
        grant = grant_for_product(product_id)
        async with session_scope(self._session_factory) as session:
            if await ProviderTransactionRepository(session).get(transaction_id) is not None:
                logger.warning("Transaction already processed: %s", transaction_id)
                raise InvalidRequestError("Transaction already processed")

        response = await self._app_store.verify_receipt(receipt_data)
        in_app = (response.get("receipt") or {}).get("in_app") or []
        if not any(t.get("transaction_id") == transaction_id for t in in_app):
            raise InvalidRequestError("Transaction not found in receipt")

        async with session_scope(self._session_factory) as session:
            created = await ProviderTransactionRepository(session).record(
                transaction_ref=transaction_id,
                user_id=user_id,
                product_ref=product_id,
                transaction_type=TransactionType.CONSUMABLE,
            )
            if not created:
                raise InvalidRequestError("Transaction already processed")
            snapshot = await EntitlementService(session).credit(user_id, grant)
            return {
                "product_id": product_id,
                "kind": grant.kind.value,
                "quantity": grant.quantity,
                "boosts_remaining": snapshot.boosts_remaining,
                "super_likes_remaining": snapshot.super_likes_remaining,
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, user_id: str) -> SubscriptionTable | None:
        async with session_scope(self._session_factory) as session:
            return await SubscriptionRepository(session).get_by_user(user_id)

    async def _effective_tier(self, user_id: str) -> Tier:
        row = await self._load(user_id)
        if row is None:
            return LOWEST_TIER
        return effective_tier(row.tier, row.status, row.current_period_end)

    @staticmethod
    def _is_terminal(row: SubscriptionTable) -> bool:
        return SubscriptionStatus(row.status) in TERMINAL_STATUSES

    async def _require_stripe_subscription(self, user_id: str) -> SubscriptionTable:
        row = await self._load(user_id)
        if row is None or self._is_terminal(row):
            raise NotFoundError("No active subscription")
        if row.provider == ProviderKind.APP_STORE.value:
            raise InvalidRequestError("App Store subscriptions are managed from the device")
        if not row.provider_subscription_ref:
            raise NotFoundError("No active subscription")
        return row

    async def _require_owned_method(self, user_id: str, payment_method_id: str) -> PaymentMethodTable:
        async with session_scope(self._session_factory) as session:
            row = await PaymentMethodRepository(session).get(payment_method_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError("Payment method not found")
        return row

    async def _apply(self, user_id: str, event: NormalizedEvent) -> SubscriptionDelta:
        delta = await self._processor.apply_local(user_id, event)
        if self._bus is not None and delta.result == ApplyResult.APPLIED:
            await self._bus.emit(
                EventType.SUBSCRIPTION_CHANGED,
                user_id=user_id,
                data=delta.model_dump(mode="json"),
            )
        return delta
