"""Subscription endpoints: lifecycle, entitlements, access checks and usage."""

from __future__ import annotations

import logging

from billing_core.models.enums import ConsumableKind, Tier
from fastapi import APIRouter

from billing_api.dependencies import BillingServiceDep
from billing_api.middleware.auth import CurrentUserDep
from billing_api.schemas import (
    CallValidationRequest,
    CancelRequest,
    ChangePlanRequest,
    CreateCustomerRequest,
    CreateSubscriptionRequest,
    EntitlementsResponse,
    FeatureAccessResponse,
    FeatureValidationRequest,
    SubscriptionResponse,
    TierAccessResponse,
    UsageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/customer", response_model=SubscriptionResponse)
async def create_customer(
    body: CreateCustomerRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> SubscriptionResponse:
    """Create the Stripe customer for the caller.

    Idempotent: a caller that already has a customer gets its current
    subscription back.
    """
    info = await service.create_customer(user.user_id, body.email or user.email)
    return SubscriptionResponse(**info)


@router.post("", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(
    body: CreateSubscriptionRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> SubscriptionResponse:
    """Subscribe the caller to a plan.

    The response carries the ``client_secret`` of the first invoice's
    payment intent when the client must confirm the payment.
    """
    info = await service.create_subscription(
        user.user_id,
        body.plan_id,
        payment_method_id=body.payment_method_id,
        trial_days=body.trial_days,
        email=user.email,
    )
    return SubscriptionResponse(**info)


@router.get("/current", response_model=SubscriptionResponse)
async def current_subscription(user: CurrentUserDep, service: BillingServiceDep) -> SubscriptionResponse:
    info = await service.get_subscription(user.user_id)
    return SubscriptionResponse(**info)


@router.put("/plan", response_model=SubscriptionResponse)
async def change_plan(
    body: ChangePlanRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> SubscriptionResponse:
    info = await service.change_plan(user.user_id, body.plan_id)
    return SubscriptionResponse(**info)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    body: CancelRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> SubscriptionResponse:
    """Cancel at period end, or immediately when ``immediate`` is set."""
    info = await service.cancel(user.user_id, immediate=body.immediate)
    return SubscriptionResponse(**info)


@router.post("/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(user: CurrentUserDep, service: BillingServiceDep) -> SubscriptionResponse:
    info = await service.reactivate(user.user_id)
    return SubscriptionResponse(**info)


@router.get("/entitlements", response_model=EntitlementsResponse)
async def entitlements(user: CurrentUserDep, service: BillingServiceDep) -> EntitlementsResponse:
    """Return the caller's effective features and consumable balances."""
    info = await service.get_entitlements(user.user_id)
    return EntitlementsResponse(**info)


@router.post("/features/validate", response_model=FeatureAccessResponse)
async def validate_feature(
    body: FeatureValidationRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> FeatureAccessResponse:
    info = await service.validate_feature(user.user_id, body.feature)
    return FeatureAccessResponse(**info)


@router.post("/usage/{kind}", response_model=UsageResponse)
async def consume(kind: ConsumableKind, user: CurrentUserDep, service: BillingServiceDep) -> UsageResponse:
    """Consume one like, super like or boost.

    A denial is a normal response with ``allowed`` false, not an error.
    """
    info = await service.consume(user.user_id, kind)
    return UsageResponse(**info)


@router.post("/calls/validate", response_model=FeatureAccessResponse)
async def validate_call(
    body: CallValidationRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> FeatureAccessResponse:
    """Check whether the caller may start a call, or keep one running.

    With ``current_minutes`` set, the tier's duration limit is also checked
    and ``time_remaining`` reports the minutes left.
    """
    info = await service.validate_call(user.user_id, body.call_type, body.current_minutes)
    return FeatureAccessResponse(**info)


@router.get("/tiers/{tier}/access", response_model=TierAccessResponse)
async def tier_access(tier: Tier, user: CurrentUserDep, service: BillingServiceDep) -> TierAccessResponse:
    info = await service.check_tier_access(user.user_id, tier)
    return TierAccessResponse(**info)
