"""Provider notification endpoints.

Stripe and the App Store deliver subscription and invoice notifications
here.  Both endpoints bypass bearer authentication: Stripe requests are
authenticated by the ``Stripe-Signature`` HMAC header and App Store
requests by the JWS signature inside the body.

A notification is acknowledged (``{"received": true}``) once it is durably
recorded, including when it is a duplicate or when processing it failed
for a business reason.  Transient failures return 503 so the provider
redelivers.
"""

from __future__ import annotations

import logging

from billing_core.ingestion import IngestResult
from billing_core.models.enums import EventStatus, ProviderKind
from billing_core.reconciliation import ApplyResult, ProcessResult
from fastapi import APIRouter, Request

from billing_api.dependencies import EventBusDep, GatewayDep, ProcessorDep
from billing_api.schemas import WebhookAck
from billing_api.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _publish(bus: EventBus, result: ProcessResult, correlation_id: str | None) -> None:
    """Tell bus subscribers what processing an event changed."""
    if result.status == EventStatus.FAILED:
        await bus.emit(
            EventType.EVENT_FAILED,
            data={
                "provider": result.provider.value,
                "event_ref": result.event_ref,
                "error": result.error,
            },
            correlation_id=correlation_id,
        )
        return

    delta = result.delta
    if delta is None or delta.result != ApplyResult.APPLIED:
        return
    if delta.ledger_ref is not None:
        await bus.emit(
            EventType.LEDGER_RECORDED,
            user_id=delta.user_id,
            data={"invoice_id": delta.ledger_ref, "event_ref": result.event_ref},
            correlation_id=correlation_id,
        )
    if delta.status_changed or delta.tier_changed:
        await bus.emit(
            EventType.SUBSCRIPTION_CHANGED,
            user_id=delta.user_id,
            data=delta.model_dump(mode="json"),
            correlation_id=correlation_id,
        )


async def _ingest_and_process(
    request: Request,
    provider: ProviderKind,
    signature_header: str | None,
    gateway: GatewayDep,
    processor: ProcessorDep,
    bus: EventBus,
) -> WebhookAck:
    body = await request.body()
    ingested: IngestResult = await gateway.ingest(provider, body, signature_header)
    if ingested.duplicate and not ingested.should_process:
        logger.info("Duplicate %s event %s acknowledged", provider.value, ingested.event_ref)
        return WebhookAck()

    result = await processor.process(ingested)
    await _publish(bus, result, getattr(request.state, "correlation_id", None))
    return WebhookAck()


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    gateway: GatewayDep,
    processor: ProcessorDep,
    bus: EventBusDep,
) -> WebhookAck:
    """Receive a Stripe event.

    The raw body is verified against ``Stripe-Signature`` before anything
    is parsed.
    """
    signature = request.headers.get("stripe-signature")
    return await _ingest_and_process(request, ProviderKind.STRIPE, signature, gateway, processor, bus)


@router.post("/app-store", response_model=WebhookAck)
async def app_store_webhook(
    request: Request,
    gateway: GatewayDep,
    processor: ProcessorDep,
    bus: EventBusDep,
) -> WebhookAck:
    """Receive an App Store Server Notification (``{"signedPayload": ...}``)."""
    return await _ingest_and_process(request, ProviderKind.APP_STORE, None, gateway, processor, bus)
