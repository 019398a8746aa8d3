"""Payment endpoints: payment methods, billing history, App Store purchases."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from billing_api.dependencies import BillingServiceDep
from billing_api.middleware.auth import CurrentUserDep
from billing_api.schemas import (
    AttachPaymentMethodRequest,
    BillingHistoryResponse,
    ConsumablePurchaseRequest,
    ConsumablePurchaseResponse,
    PaymentMethodListResponse,
    PaymentMethodResponse,
    ReceiptValidationRequest,
    SubscriptionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------


@router.get("/methods", response_model=PaymentMethodListResponse)
async def list_payment_methods(user: CurrentUserDep, service: BillingServiceDep) -> PaymentMethodListResponse:
    methods = await service.list_payment_methods(user.user_id)
    return PaymentMethodListResponse(payment_methods=[PaymentMethodResponse(**m) for m in methods])


@router.post("/methods", response_model=PaymentMethodResponse, status_code=201)
async def attach_payment_method(
    body: AttachPaymentMethodRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> PaymentMethodResponse:
    info = await service.attach_payment_method(
        user.user_id,
        body.payment_method_id,
        set_default=body.set_default,
    )
    return PaymentMethodResponse(**info)


@router.delete("/methods/{payment_method_id}", status_code=204)
async def detach_payment_method(
    payment_method_id: str,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> None:
    await service.detach_payment_method(user.user_id, payment_method_id)


@router.put("/methods/{payment_method_id}/default", response_model=PaymentMethodResponse)
async def set_default_payment_method(
    payment_method_id: str,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> PaymentMethodResponse:
    info = await service.set_default_payment_method(user.user_id, payment_method_id)
    return PaymentMethodResponse(**info)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/history", response_model=BillingHistoryResponse)
async def billing_history(
    user: CurrentUserDep,
    service: BillingServiceDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> BillingHistoryResponse:
    """Return the caller's ledger entries, newest first."""
    info = await service.billing_history(user.user_id, limit=limit, offset=offset)
    return BillingHistoryResponse(**info)


# ---------------------------------------------------------------------------
# App Store purchases
# ---------------------------------------------------------------------------


@router.post("/app-store/receipt", response_model=SubscriptionResponse)
async def validate_receipt(
    body: ReceiptValidationRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> SubscriptionResponse:
    """Verify an App Store subscription receipt and reconcile the subscription."""
    info = await service.validate_app_store_receipt(user.user_id, body.receipt_data)
    return SubscriptionResponse(**info)


@router.post("/app-store/consumable", response_model=ConsumablePurchaseResponse)
async def record_consumable(
    body: ConsumablePurchaseRequest,
    user: CurrentUserDep,
    service: BillingServiceDep,
) -> ConsumablePurchaseResponse:
    """Credit a boost or super-like pack once its transaction is verified."""
    info = await service.record_consumable_purchase(
        user.user_id,
        body.product_id,
        body.transaction_id,
        body.receipt_data,
    )
    return ConsumablePurchaseResponse(**info)
