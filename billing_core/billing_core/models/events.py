"""Normalized billing events.

Provider payloads are converted into exactly one of these models right after
verification.  Every downstream component (identity linker, state machine,
ledger) consumes this tagged union and nothing else.  The ``kind`` literal is
the discriminator, so a stored event can be re-hydrated with
:func:`parse_event`.

Local-origin events (customer creation, user-initiated cancel or
reactivation) share the union so that user actions and provider
notifications go through the same transitions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from billing_core.models.enums import (
    LedgerEntryType,
    LedgerStatus,
    ProviderKind,
    SubscriptionStatus,
    Tier,
)


class LedgerOutcome(BaseModel):
    """Invoice or payment outcome to be recorded in the billing ledger."""

    model_config = ConfigDict(frozen=True)

    invoice_ref: str = Field(..., min_length=1)
    entry_type: LedgerEntryType = LedgerEntryType.SUBSCRIPTION
    amount: int = Field(..., ge=0, description="Amount in minor units (cents).")
    currency: str | None = None
    status: LedgerStatus
    period_start: datetime | None = None
    period_end: datetime | None = None
    description: str | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf_url: str | None = None


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: ProviderKind
    event_ref: str = Field(..., min_length=1, description="Provider event identifier.")
    occurred_at: datetime = Field(..., description="Timestamp embedded by the provider.")
    owner_ref: str | None = Field(
        default=None,
        description="Provider customer id, or original transaction id for the App Store.",
    )


class _SubscriptionState(_EventBase):
    """Absolute subscription state as reported by a provider."""

    subscription_ref: str | None = None
    original_transaction_ref: str | None = None
    status: SubscriptionStatus
    tier: Tier
    plan_ref: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    cancel_at_period_end: bool = False
    auto_renew: bool = True
    is_trial: bool = False


class SubscriptionCreated(_SubscriptionState):
    kind: Literal["subscription_created"] = "subscription_created"


class SubscriptionUpdated(_SubscriptionState):
    kind: Literal["subscription_updated"] = "subscription_updated"


class SubscriptionDeleted(_EventBase):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    subscription_ref: str | None = None


class SubscriptionExpired(_EventBase):
    kind: Literal["subscription_expired"] = "subscription_expired"
    subscription_ref: str | None = None


class RenewalSucceeded(_EventBase):
    """A renewal (or the first invoice) was paid.

    ``affects_subscription`` is ``False`` for one-off invoices, in which
    case only the ledger outcome is recorded.
    """

    kind: Literal["renewal_succeeded"] = "renewal_succeeded"
    affects_subscription: bool = True
    subscription_ref: str | None = None
    transaction_ref: str | None = None
    tier: Tier | None = None
    plan_ref: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    ledger: LedgerOutcome | None = None


class RenewalFailed(_EventBase):
    kind: Literal["renewal_failed"] = "renewal_failed"
    affects_subscription: bool = True
    subscription_ref: str | None = None
    reason: str | None = None
    ledger: LedgerOutcome | None = None


class AutoRenewChanged(_EventBase):
    kind: Literal["auto_renew_changed"] = "auto_renew_changed"
    auto_renew: bool


class Refunded(_EventBase):
    kind: Literal["refunded"] = "refunded"
    transaction_ref: str | None = None
    ledger: LedgerOutcome | None = None


class PaymentMethodAttached(_EventBase):
    kind: Literal["payment_method_attached"] = "payment_method_attached"
    payment_method_ref: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class PaymentMethodDetached(_EventBase):
    kind: Literal["payment_method_detached"] = "payment_method_detached"
    payment_method_ref: str


class Informational(_EventBase):
    """Recognized or unknown provider event with no canonical effect."""

    kind: Literal["informational"] = "informational"
    event_type: str
    note: str | None = None


# -- Local-origin events ------------------------------------------------------


def local_timestamp() -> datetime:
    """Current time for a local-origin event, truncated to whole seconds.

    Provider timestamps have one-second resolution.  A sub-second local stamp
    would make a provider notification sent in the same second look stale.
    """
    return datetime.now(UTC).replace(microsecond=0)


class CustomerLinked(_EventBase):
    kind: Literal["customer_linked"] = "customer_linked"


class CancelAtPeriodEndRequested(_EventBase):
    kind: Literal["cancel_at_period_end_requested"] = "cancel_at_period_end_requested"


class ImmediateCancelRequested(_EventBase):
    kind: Literal["immediate_cancel_requested"] = "immediate_cancel_requested"


class ReactivationRequested(_EventBase):
    kind: Literal["reactivation_requested"] = "reactivation_requested"


NormalizedEvent = Annotated[
    SubscriptionCreated
    | SubscriptionUpdated
    | SubscriptionDeleted
    | SubscriptionExpired
    | RenewalSucceeded
    | RenewalFailed
    | AutoRenewChanged
    | Refunded
    | PaymentMethodAttached
    | PaymentMethodDetached
    | Informational
    | CustomerLinked
    | CancelAtPeriodEndRequested
    | ImmediateCancelRequested
    | ReactivationRequested,
    Field(discriminator="kind"),
]

_EVENT_ADAPTER: TypeAdapter[NormalizedEvent] = TypeAdapter(NormalizedEvent)


def parse_event(data: dict[str, Any]) -> NormalizedEvent:
    """Re-hydrate a stored ``model_dump(mode="json")`` payload."""
    return _EVENT_ADAPTER.validate_python(data)
