"""Stripe webhook verification and normalization.

:func:`verify_stripe_signature` authenticates the raw body against the
``Stripe-Signature`` header.  :func:`normalize_stripe_event` turns the
verified event into one :data:`~billing_core.models.events.NormalizedEvent`
via a handler table keyed by Stripe event type; types without a handler
become :class:`~billing_core.models.events.Informational`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from billing_core.errors import PayloadError, VerificationError
from billing_core.models.enums import LedgerStatus, ProviderKind, Tier
from billing_core.models.events import (
    Informational,
    LedgerOutcome,
    NormalizedEvent,
    PaymentMethodAttached,
    PaymentMethodDetached,
    RenewalFailed,
    RenewalSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    local_timestamp,
)
from billing_core.vocabulary.mapper import map_price_ref_to_tier, map_provider_status

logger = logging.getLogger(__name__)


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance: int = 300,
) -> dict[str, Any]:
    """Verify a Stripe webhook and return the decoded event.

    Raises
    ------
    VerificationError
        If the header is absent, the secret is not configured, the signature
        does not match, or the body is not a JSON object.
    """
    if not signature_header:
        raise VerificationError("Missing Stripe-Signature header")
    if not secret:
        raise VerificationError("Stripe webhook secret is not configured")

    import stripe

    try:
        payload_text = raw_body.decode("utf-8")
        stripe.WebhookSignature.verify_header(payload_text, signature_header, secret, tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        raise VerificationError("Signature verification failed") from exc

    try:
        payload = json.loads(payload_text)
    except ValueError as exc:
        raise VerificationError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise VerificationError("Webhook body is not a JSON object")
    return payload


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _from_unix(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError) as exc:
        raise PayloadError(f"Invalid timestamp: {value!r}") from exc


def _ref(value: Any) -> str | None:
    """Return an object id whether the field is expanded or not."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _require(obj: dict[str, Any], key: str) -> Any:
    value = obj.get(key)
    if value is None:
        raise PayloadError(f"Stripe object is missing {key!r}")
    return value


def _invoice_subscription(invoice: dict[str, Any]) -> str | None:
    # Newer API versions move the subscription under ``parent``.
    sub = _ref(invoice.get("subscription"))
    if sub:
        return sub
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


def _invoice_period(invoice: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        period = lines[0].get("period") or {}
        return _from_unix(period.get("start")), _from_unix(period.get("end"))
    return _from_unix(invoice.get("period_start")), _from_unix(invoice.get("period_end"))


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

_Handler = Callable[[dict[str, Any], dict[str, Any], dict[str, Any], Mapping[str, Tier]], NormalizedEvent]


def _subscription_fields(obj: dict[str, Any], price_tiers: Mapping[str, Tier]) -> dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    item = items[0] if items else {}
    price_ref = (item.get("price") or {}).get("id")
    raw_status = _require(obj, "status")
    cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    # Period fields moved from the subscription to its items in newer API versions.
    period_start = obj.get("current_period_start", item.get("current_period_start"))
    period_end = obj.get("current_period_end", item.get("current_period_end"))
    return {
        "owner_ref": _ref(_require(obj, "customer")),
        "subscription_ref": _require(obj, "id"),
        "status": map_provider_status(ProviderKind.STRIPE, raw_status),
        "tier": map_price_ref_to_tier(price_ref, price_tiers),
        "plan_ref": price_ref,
        "period_start": _from_unix(period_start),
        "period_end": _from_unix(period_end),
        "cancel_at_period_end": cancel_at_period_end,
        "auto_renew": not cancel_at_period_end,
        "is_trial": raw_status == "trialing",
    }


def _on_subscription_created(
    base: dict[str, Any],
    obj: dict[str, Any],
    payload: dict[str, Any],
    price_tiers: Mapping[str, Tier],
) -> NormalizedEvent:
    return SubscriptionCreated(**base, **_subscription_fields(obj, price_tiers))


def _on_subscription_updated(
    base: dict[str, Any],
    obj: dict[str, Any],
    payload: dict[str, Any],
    price_tiers: Mapping[str, Tier],
) -> NormalizedEvent:
    return SubscriptionUpdated(**base, **_subscription_fields(obj, price_tiers))


def _on_subscription_deleted(
    base: dict[str, Any],
    obj: dict[str, Any],
    payload: dict[str, Any],
    price_tiers: Mapping[str, Tier],
) -> NormalizedEvent:
    return SubscriptionDeleted(
        **base,
        owner_ref=_ref(_require(obj, "customer")),
        subscription_ref=_require(obj, "id"),
    )


def _on_invoice_paid(
    base: dict[str, Any],
    obj: dict[str, Any],
    payload: dict[str, Any],
    price_tiers: Mapping[str, Tier],
) -> NormalizedEvent:
    subscription_ref = _invoice_subscription(obj)
    period_start, period_end = _invoice_period(obj)
    return RenewalSucceeded(
        **base,
        owner_ref=_ref(_require(obj, "customer")),
        affects_subscription=subscription_ref is not None,
        subscription_ref=subscription_ref,
        period_start=period_start,
        period_end=period_end,
        ledger=LedgerOutcome(
            invoice_ref=_require(obj, "id"),
            amount=int(obj.get("amount_paid") or 0),
            currency=obj.get("currency"),
            status=LedgerStatus.PAID,
            period_start=period_start,
            period_end=period_end,
            description=obj.get("description") or "Subscription payment",
            hosted_invoice_url=obj.get("hosted_invoice_url"),
            invoice_pdf_url=obj.get("invoice_pdf"),
        ),
    )


def _on_invoice_failed(
    base: dict[str, Any],
    obj: dict[str, Any],
    payload: dict[str, Any],
    price_tiers: Mapping[str, Tier],
) -> NormalizedEvent:
    subscription_ref = _invoice_subscription(obj)
    reason = obj.get("description") or "Subscription payment"
    return RenewalFailed(
        **base,
        owner_ref=_ref(_require(obj, "customer")),
        affects_subscription=subscription_ref is not None,
        subscription_ref=subscription_ref,
        reason=reason,
        ledger=LedgerOutcome(
            invoice_ref=_require(obj, "id"),
            amount=int(obj.get("amount_due") or 0),
            currency=obj.get("currency"),
            status=LedgerStatus.UNCOLLECTIBLE,
            period_start=_from_unix(obj.get("period_start")),
            period_end=_from_unix(obj.get("period_end")),
            description=f"Payment failed - {reason}",
            hosted_invoice_url=obj.get("hosted_invoice_url"),
            invoice_pdf_url=obj.get("invoice_pdf"),
        ),
    )


def _on_payment_method_attached(
    base: dict[str, Any],
    obj: dict[str, Any],
    payload: dict[str, Any],
    price_tiers: Mapping[str, Tier],
) -> NormalizedEvent:
    card = obj.get("card") or {}
    return PaymentMethodAttached(
        **base,
        owner_ref=_ref(_require(obj, "customer")),
        payment_method_ref=_require(obj, "id"),
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
    )


def _on_payment_method_detached(
    base: dict[str, Any],
    obj: dict[str, Any],
    payload: dict[str, Any],
    price_tiers: Mapping[str, Tier],
) -> NormalizedEvent:
    # The customer is already cleared on the object; Stripe reports it in
    # previous_attributes instead.
    previous = (payload.get("data") or {}).get("previous_attributes") or {}
    return PaymentMethodDetached(
        **base,
        owner_ref=_ref(obj.get("customer") or previous.get("customer")),
        payment_method_ref=_require(obj, "id"),
    )


_STRIPE_HANDLERS: dict[str, _Handler] = {
    "customer.subscription.created": _on_subscription_created,
    "customer.subscription.updated": _on_subscription_updated,
    "customer.subscription.deleted": _on_subscription_deleted,
    "invoice.payment_succeeded": _on_invoice_paid,
    "invoice.payment_failed": _on_invoice_failed,
    "payment_method.attached": _on_payment_method_attached,
    "payment_method.detached": _on_payment_method_detached,
}

# Recognized types that are logged and acknowledged without a state change.
INFORMATIONAL_TYPES: dict[str, str] = {
    "customer.subscription.trial_will_end": "trial ending soon",
    "payment_intent.succeeded": "payment intent succeeded",
    "payment_intent.payment_failed": "payment intent failed",
    "charge.dispute.created": "dispute opened",
    "charge.dispute.closed": "dispute closed",
}


def normalize_stripe_event(payload: dict[str, Any], price_tiers: Mapping[str, Tier]) -> NormalizedEvent:
    """Convert a verified Stripe event into a normalized event.

    Parameters
    ----------
    payload:
        The decoded Stripe ``Event`` object.
    price_tiers:
        Price-id to tier table used for subscription objects.

    Raises
    ------
    PayloadError
        If a required field is missing or malformed.
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise PayloadError("Stripe event is missing id or type")
    obj = (payload.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise PayloadError(f"Stripe event {event_id} has no data.object")

    base = {
        "provider": ProviderKind.STRIPE,
        "event_ref": event_id,
        "occurred_at": _from_unix(payload.get("created")) or datetime.now(UTC),
    }

    handler = _STRIPE_HANDLERS.get(event_type)
    if handler is None:
        note = INFORMATIONAL_TYPES.get(event_type, "unhandled event type")
        if event_type not in INFORMATIONAL_TYPES:
            logger.warning("Unhandled Stripe event type: %s", event_type)
        return Informational(**base, owner_ref=_ref(obj.get("customer")), event_type=event_type, note=note)
    try:
        return handler(base, obj, payload, price_tiers)
    except ValidationError as exc:
        raise PayloadError(f"Malformed Stripe {event_type} payload: {exc.error_count()} invalid field(s)") from exc


def subscription_snapshot(
    obj: Mapping[str, Any],
    price_tiers: Mapping[str, Tier],
    *,
    event_ref: str,
    occurred_at: datetime | None = None,
) -> SubscriptionUpdated:
    """Build a ``SubscriptionUpdated`` from a subscription returned by the Stripe API.

    Used after user-initiated calls (create, plan change) so the response
    goes through the same transition as the webhook that will follow it.
    """
    try:
        return SubscriptionUpdated(
            provider=ProviderKind.STRIPE,
            event_ref=event_ref,
            occurred_at=occurred_at or local_timestamp(),
            **_subscription_fields(dict(obj), price_tiers),
        )
    except ValidationError as exc:
        raise PayloadError("Malformed Stripe subscription object") from exc
