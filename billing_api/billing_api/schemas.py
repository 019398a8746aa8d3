"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Webhook schemas
# ---------------------------------------------------------------------------


class WebhookAck(BaseModel):
    """Acknowledgement returned to a provider once ingestion succeeded."""

    received: bool = True


class AppStoreNotificationBody(BaseModel):
    """Body of an App Store Server Notification (V2)."""

    signedPayload: str = Field(..., min_length=1)  # noqa: N815


# ---------------------------------------------------------------------------
# Subscription schemas
# ---------------------------------------------------------------------------


class CreateCustomerRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)


class CreateSubscriptionRequest(BaseModel):
    """Request body for ``POST /subscriptions``."""

    plan_id: str = Field(..., description="Plan identifier, e.g. ``connect_monthly``.")
    payment_method_id: str | None = Field(default=None, description="Stripe payment method to charge.")
    trial_days: int | None = Field(default=None, ge=1, le=31)


class ChangePlanRequest(BaseModel):
    plan_id: str


class CancelRequest(BaseModel):
    """Request body for ``POST /subscriptions/cancel``."""

    immediate: bool = Field(
        default=False,
        description="Cancel now instead of at the end of the current period.",
    )


class SubscriptionResponse(BaseModel):
    """Canonical subscription state for the authenticated user."""

    has_subscription: bool
    user_id: str
    provider: str | None = None
    status: str
    tier: str
    effective_tier: str
    plan_id: str | None = None
    subscription_id: str | None = None
    current_period_start: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool = False
    cancelled_at: str | None = None
    auto_renew: bool = True
    is_trial: bool = False
    client_secret: str | None = None


class FeatureValidationRequest(BaseModel):
    feature: str = Field(..., min_length=1)


class FeatureAccessResponse(BaseModel):
    """Result of a feature-access check."""

    allowed: bool
    reason: str | None = None
    upgrade_required: bool = False
    required_tier: str | None = None
    time_remaining: int | None = None


class CallValidationRequest(BaseModel):
    """Call about to start, or running for ``current_minutes``."""

    call_type: Literal["audio", "video", "screen_share"]
    current_minutes: int | None = Field(default=None, ge=0)


class TierAccessResponse(BaseModel):
    tier: str
    required_tier: str
    has_access: bool


class EntitlementsResponse(BaseModel):
    """Effective feature matrix plus consumable balances."""

    tier: str
    status: str
    features: dict[str, Any]
    boosts_remaining: int
    super_likes_remaining: int
    daily_likes_used: int
    daily_super_likes_used: int


class UsageResponse(BaseModel):
    """Outcome of consuming a like, super like or boost."""

    allowed: bool
    reason: str | None = None
    boosts_remaining: int
    super_likes_remaining: int
    daily_likes_used: int
    daily_super_likes_used: int


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------


class AttachPaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1)
    set_default: bool = False


class PaymentMethodResponse(BaseModel):
    """A payment method mirrored from Stripe."""

    id: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None
    is_default: bool = False


class PaymentMethodListResponse(BaseModel):
    payment_methods: list[PaymentMethodResponse]


class LedgerEntryResponse(BaseModel):
    """A single billing ledger entry."""

    invoice_id: str
    entry_type: str
    amount: int
    currency: str
    status: str
    description: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf_url: str | None = None
    created_at: str | None = None


class BillingHistoryResponse(BaseModel):
    """Paginated ledger history."""

    entries: list[LedgerEntryResponse]
    total: int


class ReceiptValidationRequest(BaseModel):
    receipt_data: str = Field(..., min_length=1)


class ConsumablePurchaseRequest(BaseModel):
    """Request body for ``POST /payments/app-store/consumable``."""

    product_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    receipt_data: str = Field(..., min_length=1)


class ConsumablePurchaseResponse(BaseModel):
    product_id: str
    kind: str
    quantity: int
    boosts_remaining: int
    super_likes_remaining: int
