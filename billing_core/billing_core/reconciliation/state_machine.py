"""Subscription reconciliation state machine.

One canonical ``subscriptions`` row per user is advanced by normalized
events from either provider and by local user actions.  Provider
notifications can arrive late, twice, or out of order, so every write is
ordered by the timestamp embedded in the event rather than by arrival:

* ``status``, ``tier`` and the cancellation flags follow last-writer-wins
  against ``status_event_at``.  An event older than the stored watermark is
  ignored for these fields.
* The period window follows last-writer-wins against ``period_event_at``.
  Renewals only ever move ``current_period_end`` forward.
* Terminal transitions (deleted, expired, refunded, immediate cancel) share
  one code path and always force the lowest tier.

The row is loaded with ``SELECT ... FOR UPDATE`` where supported and
guarded by a ``version`` column, so a concurrent writer makes the flush
raise ``StaleDataError`` and the caller re-runs the whole unit of work.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import assert_never

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.config import BillingSettings
from billing_core.entitlements.consumables import CONSUMABLE_PRODUCTS
from billing_core.entitlements.service import EntitlementService
from billing_core.errors import PayloadError
from billing_core.ledger.ledger import BillingLedger
from billing_core.models.enums import (
    LOWEST_TIER,
    TERMINAL_STATUSES,
    LedgerEntryType,
    ProviderKind,
    SubscriptionStatus,
    Tier,
    TransactionType,
    coerce_tier,
)
from billing_core.models.events import (
    AutoRenewChanged,
    CancelAtPeriodEndRequested,
    CustomerLinked,
    ImmediateCancelRequested,
    Informational,
    LedgerOutcome,
    NormalizedEvent,
    PaymentMethodAttached,
    PaymentMethodDetached,
    ReactivationRequested,
    Refunded,
    RenewalFailed,
    RenewalSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionExpired,
    SubscriptionUpdated,
)
from billing_core.state.repository import (
    PaymentMethodRepository,
    ProviderTransactionRepository,
    SubscriptionRepository,
)
from billing_core.state.tables import ProviderTransactionTable, SubscriptionTable

logger = logging.getLogger(__name__)


class ApplyResult(str, Enum):
    APPLIED = "applied"
    OWNER_NOT_FOUND = "owner_not_found"
    UNCHANGED = "unchanged"


class SubscriptionDelta(BaseModel):
    """Before/after view of one :meth:`SubscriptionStateMachine.apply` call."""

    user_id: str
    event_kind: str
    result: ApplyResult
    previous_status: SubscriptionStatus | None = None
    status: SubscriptionStatus | None = None
    previous_tier: Tier | None = None
    tier: Tier | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    ledger_ref: str | None = None

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.status

    @property
    def tier_changed(self) -> bool:
        return self.previous_tier != self.tier


def _is_stale(occurred_at: datetime, watermark: datetime | None) -> bool:
    return watermark is not None and occurred_at < watermark


class SubscriptionStateMachine:
    """Applies normalized events to a user's canonical subscription.

    Parameters
    ----------
    session:
        The unit of work.  Nothing is committed here.
    settings:
        Billing settings; only ``default_currency`` is read.
    """

    def __init__(self, session: AsyncSession, settings: BillingSettings) -> None:
        self._session = session
        self._subscriptions = SubscriptionRepository(session)
        self._transactions = ProviderTransactionRepository(session)
        self._payment_methods = PaymentMethodRepository(session)
        self._entitlements = EntitlementService(session)
        self._ledger = BillingLedger(session, default_currency=settings.default_currency)

    async def apply(self, user_id: str, event: NormalizedEvent) -> SubscriptionDelta:
        """Advance *user_id*'s subscription by *event*.

        Returns
        -------
        SubscriptionDelta
            ``result`` is ``OWNER_NOT_FOUND`` when the user has no
            subscription row and *event* cannot create one.

        Raises
        ------
        PayloadError
            If the event contradicts stored state (a period that ends before
            it starts, a provider reference owned by another user).
        sqlalchemy.orm.exc.StaleDataError
            If a concurrent writer updated the row first.
        """
        match event:
            case Informational():
                logger.info("Event %s (%s) has no canonical effect", event.event_ref, event.event_type)
                return SubscriptionDelta(user_id=user_id, event_kind=event.kind, result=ApplyResult.UNCHANGED)
            case PaymentMethodAttached():
                await self._payment_methods.upsert(
                    user_id=user_id,
                    payment_method_ref=event.payment_method_ref,
                    brand=event.brand,
                    last4=event.last4,
                    exp_month=event.exp_month,
                    exp_year=event.exp_year,
                )
                return SubscriptionDelta(user_id=user_id, event_kind=event.kind, result=ApplyResult.APPLIED)
            case PaymentMethodDetached():
                removed = await self._payment_methods.delete(event.payment_method_ref)
                return SubscriptionDelta(
                    user_id=user_id,
                    event_kind=event.kind,
                    result=ApplyResult.APPLIED if removed else ApplyResult.UNCHANGED,
                )
            case Refunded():
                transaction = await self._transactions.get(event.transaction_ref) if event.transaction_ref else None
                if transaction is not None and transaction.transaction_type == TransactionType.CONSUMABLE.value:
                    return await self._refund_consumable(user_id, event, transaction)
                return await self._apply_to_subscription(user_id, event)
            case _:
                return await self._apply_to_subscription(user_id, event)

    async def _refund_consumable(
        self,
        user_id: str,
        event: Refunded,
        transaction: ProviderTransactionTable,
    ) -> SubscriptionDelta:
        """Mark a consumable purchase refunded and take back its grant.

        The subscription is left alone.  A replayed refund debits nothing.
        """
        if transaction.user_id != user_id:
            raise PayloadError(f"Transaction {transaction.provider_transaction_ref} belongs to another user")

        refunded = await self._transactions.mark_refunded(transaction.provider_transaction_ref)
        grant = CONSUMABLE_PRODUCTS.get(transaction.product_ref)
        if refunded and grant is not None:
            await self._entitlements.debit(user_id, grant)
        elif grant is None:
            logger.warning("Refunded consumable %s has no known grant", transaction.product_ref)

        ledger_ref: str | None = None
        if event.ledger is not None:
            outcome = event.ledger.model_copy(update={"entry_type": LedgerEntryType.CONSUMABLE})
            entry = await self._ledger.record_outcome(
                user_id,
                outcome.invoice_ref,
                outcome,
                occurred_at=event.occurred_at,
            )
            ledger_ref = entry.provider_invoice_ref

        logger.info(
            "Consumable %s refunded for user=%s (%s)",
            transaction.provider_transaction_ref,
            user_id,
            "debited" if refunded else "already refunded",
        )
        return SubscriptionDelta(
            user_id=user_id,
            event_kind=event.kind,
            result=ApplyResult.APPLIED if refunded else ApplyResult.UNCHANGED,
            ledger_ref=ledger_ref,
        )

    # ------------------------------------------------------------------
    # Subscription transitions
    # ------------------------------------------------------------------

    async def _apply_to_subscription(
        self,
        user_id: str,
        event: SubscriptionCreated
        | SubscriptionUpdated
        | SubscriptionDeleted
        | SubscriptionExpired
        | RenewalSucceeded
        | RenewalFailed
        | AutoRenewChanged
        | Refunded
        | CustomerLinked
        | CancelAtPeriodEndRequested
        | ImmediateCancelRequested
        | ReactivationRequested,
    ) -> SubscriptionDelta:
        row = await self._subscriptions.get_for_update(user_id)
        created = False
        if row is None:
            if not isinstance(event, CustomerLinked | SubscriptionCreated):
                logger.info(
                    "No subscription for user=%s; dropping %s event %s",
                    user_id,
                    event.kind,
                    event.event_ref,
                )
                return SubscriptionDelta(user_id=user_id, event_kind=event.kind, result=ApplyResult.OWNER_NOT_FOUND)
            row = await self._subscriptions.ensure(
                user_id,
                provider=event.provider,
                customer_ref=event.owner_ref if event.provider == ProviderKind.STRIPE else None,
            )
            created = True

        previous_status = SubscriptionStatus(row.status)
        previous_tier = coerce_tier(row.tier)
        previous_end = row.current_period_end
        previous_flag = row.cancel_at_period_end
        ledger: LedgerOutcome | None = None

        match event:
            case SubscriptionCreated() | SubscriptionUpdated():
                await self._apply_state(user_id, row, event)
            case SubscriptionDeleted():
                self._terminate(row, SubscriptionStatus.CANCELLED, event.occurred_at)
            case SubscriptionExpired():
                self._terminate(row, SubscriptionStatus.EXPIRED, event.occurred_at)
            case RenewalSucceeded():
                ledger = event.ledger
                if event.affects_subscription:
                    await self._apply_renewal(user_id, row, event)
            case RenewalFailed():
                ledger = event.ledger
                if event.affects_subscription:
                    self._apply_renewal_failure(row, event)
            case AutoRenewChanged():
                if not _is_stale(event.occurred_at, row.status_event_at):
                    row.auto_renew = event.auto_renew
                    row.cancel_at_period_end = not event.auto_renew
            case Refunded():
                ledger = event.ledger
                if event.transaction_ref:
                    await self._transactions.mark_refunded(event.transaction_ref)
                self._terminate(row, SubscriptionStatus.CANCELLED, event.occurred_at)
            case CustomerLinked():
                if event.owner_ref and row.provider_customer_ref != event.owner_ref:
                    row.provider_customer_ref = event.owner_ref
                    row.provider = event.provider.value
            case CancelAtPeriodEndRequested():
                row.cancel_at_period_end = True
                row.auto_renew = False
            case ImmediateCancelRequested():
                self._terminate(row, SubscriptionStatus.CANCELLED, event.occurred_at)
            case ReactivationRequested():
                row.cancel_at_period_end = False
                row.auto_renew = True
                self._set_status(row, SubscriptionStatus.ACTIVE, event.occurred_at)
            case _:
                assert_never(event)

        await self._subscriptions.flush()

        status = SubscriptionStatus(row.status)
        tier = coerce_tier(row.tier)
        if created or tier != previous_tier:
            await self._entitlements.sync(user_id, tier)

        ledger_ref: str | None = None
        if ledger is not None:
            entry = await self._ledger.record_outcome(
                user_id,
                ledger.invoice_ref,
                ledger,
                occurred_at=event.occurred_at,
            )
            ledger_ref = entry.provider_invoice_ref

        changed = (
            created
            or status != previous_status
            or tier != previous_tier
            or row.current_period_end != previous_end
            or row.cancel_at_period_end != previous_flag
        )
        if changed:
            logger.info(
                "Subscription user=%s %s: %s/%s -> %s/%s",
                user_id,
                event.kind,
                previous_status.value,
                previous_tier.value,
                status.value,
                tier.value,
            )
        return SubscriptionDelta(
            user_id=user_id,
            event_kind=event.kind,
            result=ApplyResult.APPLIED if changed or ledger_ref else ApplyResult.UNCHANGED,
            previous_status=previous_status,
            status=status,
            previous_tier=previous_tier,
            tier=tier,
            current_period_end=row.current_period_end,
            cancel_at_period_end=row.cancel_at_period_end,
            ledger_ref=ledger_ref,
        )

    async def _apply_state(
        self,
        user_id: str,
        row: SubscriptionTable,
        event: SubscriptionCreated | SubscriptionUpdated,
    ) -> None:
        """Apply an absolute provider snapshot of the subscription."""
        await self._link_refs(user_id, row, event)

        if _is_stale(event.occurred_at, row.status_event_at):
            logger.info(
                "Ignoring status from %s %s: older than stored state",
                event.kind,
                event.event_ref,
            )
        elif event.status in TERMINAL_STATUSES:
            self._terminate(row, event.status, event.occurred_at)
        else:
            self._set_status(row, event.status, event.occurred_at)
            row.tier = event.tier.value
            row.cancel_at_period_end = event.cancel_at_period_end
            row.auto_renew = event.auto_renew
            row.is_trial = event.is_trial
            if event.plan_ref:
                row.plan_ref = event.plan_ref

        self._apply_period(row, event.period_start, event.period_end, event.occurred_at)

    async def _apply_renewal(self, user_id: str, row: SubscriptionTable, event: RenewalSucceeded) -> None:
        if event.transaction_ref and event.provider == ProviderKind.APP_STORE:
            await self._transactions.record(
                transaction_ref=event.transaction_ref,
                user_id=user_id,
                product_ref=event.plan_ref or row.plan_ref or "",
                transaction_type=TransactionType.SUBSCRIPTION,
                original_transaction_ref=row.provider_original_transaction_ref,
            )

        if not _is_stale(event.occurred_at, row.status_event_at):
            self._set_status(row, SubscriptionStatus.ACTIVE, event.occurred_at)
            if event.tier is not None:
                row.tier = event.tier.value
            if event.plan_ref:
                row.plan_ref = event.plan_ref
            row.is_trial = False

        if event.period_end is None:
            return
        if event.period_start is not None and event.period_end < event.period_start:
            raise PayloadError(f"Renewal {event.event_ref} ends before it starts")
        # Renewals only extend.
        if row.current_period_end is None or event.period_end > row.current_period_end:
            if event.period_start is not None:
                row.current_period_start = event.period_start
            row.current_period_end = event.period_end
        if row.period_event_at is None or event.occurred_at > row.period_event_at:
            row.period_event_at = event.occurred_at

    def _apply_renewal_failure(self, row: SubscriptionTable, event: RenewalFailed) -> None:
        if _is_stale(event.occurred_at, row.status_event_at):
            return
        if SubscriptionStatus(row.status) in TERMINAL_STATUSES:
            logger.info("Renewal failure %s for a terminated subscription ignored", event.event_ref)
            return
        self._set_status(row, SubscriptionStatus.BILLING_RETRY, event.occurred_at)

    def _apply_period(
        self,
        row: SubscriptionTable,
        start: datetime | None,
        end: datetime | None,
        occurred_at: datetime,
    ) -> None:
        if end is None:
            return
        if start is not None and end < start:
            raise PayloadError("Subscription period ends before it starts")

        watermark = row.period_event_at
        if watermark is None or occurred_at > watermark:
            if start is not None:
                row.current_period_start = start
            row.current_period_end = end
            row.period_event_at = occurred_at
        elif occurred_at == watermark:
            # Same instant: keep the later end so replay order cannot matter.
            if row.current_period_end is None or end > row.current_period_end:
                if start is not None:
                    row.current_period_start = start
                row.current_period_end = end

    def _terminate(self, row: SubscriptionTable, status: SubscriptionStatus, occurred_at: datetime) -> None:
        """Move to a terminal status and drop to the lowest tier."""
        if _is_stale(occurred_at, row.status_event_at):
            logger.info("Ignoring %s transition older than stored state", status.value)
            return
        self._set_status(row, status, occurred_at)
        row.tier = LOWEST_TIER.value
        row.cancel_at_period_end = False
        row.auto_renew = False
        if status == SubscriptionStatus.CANCELLED:
            row.cancelled_at = datetime.now(UTC)

    def _set_status(self, row: SubscriptionTable, status: SubscriptionStatus, occurred_at: datetime) -> None:
        row.status = status.value
        if status != SubscriptionStatus.CANCELLED:
            row.cancelled_at = None
        if row.status_event_at is None or occurred_at > row.status_event_at:
            row.status_event_at = occurred_at

    async def _link_refs(
        self,
        user_id: str,
        row: SubscriptionTable,
        event: SubscriptionCreated | SubscriptionUpdated,
    ) -> None:
        if event.subscription_ref and row.provider_subscription_ref != event.subscription_ref:
            owner = await self._subscriptions.find_user_by_subscription_ref(event.subscription_ref)
            if owner is not None and owner != user_id:
                raise PayloadError(f"Subscription {event.subscription_ref} is linked to another user")
            row.provider_subscription_ref = event.subscription_ref
        if event.original_transaction_ref and row.provider_original_transaction_ref != event.original_transaction_ref:
            owner = await self._subscriptions.find_user_by_original_transaction(event.original_transaction_ref)
            if owner is not None and owner != user_id:
                raise PayloadError(f"Transaction {event.original_transaction_ref} is linked to another user")
            row.provider_original_transaction_ref = event.original_transaction_ref
        if event.provider == ProviderKind.STRIPE and event.owner_ref and not row.provider_customer_ref:
            row.provider_customer_ref = event.owner_ref
        row.provider = event.provider.value
