"""Event ingestion gateway.

Every inbound provider notification passes through :meth:`IngestionGateway.ingest`:

1. The authenticity check runs first.  Nothing is persisted for a
   notification that fails it.
2. The verified payload is normalized into a
   :data:`~billing_core.models.events.NormalizedEvent`.  A payload that
   cannot be normalized is recorded as ``failed`` and acknowledged.
3. An ``ingested_events`` row keyed by ``(provider, event_ref)`` is inserted
   with ``INSERT ... ON CONFLICT DO NOTHING``.  A redelivery of an event that
   was already processed (or already failed) is acknowledged without
   processing.

Database failures surface as :class:`TransientProviderError` so the caller
withholds the acknowledgement and the provider redelivers.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.config import BillingSettings
from billing_core.errors import PayloadError, TransientProviderError, VerificationError
from billing_core.ingestion.app_store import AppStoreJWSVerifier, normalize_app_store_notification
from billing_core.ingestion.stripe_events import normalize_stripe_event, verify_stripe_signature
from billing_core.models.enums import EventStatus, ProviderKind
from billing_core.models.events import NormalizedEvent, parse_event
from billing_core.state.database import session_scope
from billing_core.state.repository import IngestedEventRepository
from billing_core.vocabulary.mapper import price_tiers_for

logger = logging.getLogger(__name__)


class IngestResult(BaseModel):
    """Outcome of a successful ingestion.

    ``should_process`` is ``True`` only when the event still has to be
    applied: a fresh insert, or a redelivery of a record left ``pending``
    by an earlier transient failure.
    """

    model_config = ConfigDict(frozen=True)

    provider: ProviderKind
    event_ref: str
    event_type: str
    duplicate: bool = False
    status: EventStatus
    event: NormalizedEvent | None = None
    should_process: bool = False


def body_digest(raw_body: bytes) -> str:
    """Fallback dedup key for payloads without an event identifier."""
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


class IngestionGateway:
    """Verifies, normalizes and records inbound provider notifications.

    Parameters
    ----------
    session_factory:
        Factory for the sessions that write ``ingested_events``.
    settings:
        Billing settings holding the webhook secrets and price table.
    app_store_verifier:
        JWS verifier for App Store notifications.  Built from *settings*
        when omitted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: BillingSettings,
        *,
        app_store_verifier: AppStoreJWSVerifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._verifier = app_store_verifier or AppStoreJWSVerifier.from_settings(settings)
        self._price_tiers = price_tiers_for(settings)

    async def ingest(
        self,
        provider: ProviderKind,
        raw_body: bytes,
        signature_header: str | None = None,
    ) -> IngestResult:
        """Authenticate, normalize and durably record one notification.

        Parameters
        ----------
        provider:
            Which provider sent the notification.
        raw_body:
            Request body exactly as received.
        signature_header:
            ``Stripe-Signature`` header value.  Unused for the App Store,
            whose signature travels inside the body.

        Raises
        ------
        VerificationError
            If the notification is not authentic.
        TransientProviderError
            If the event record could not be written.
        """
        if provider == ProviderKind.STRIPE:
            payload = verify_stripe_signature(
                raw_body,
                signature_header,
                self._settings.stripe_webhook_secret.get_secret_value(),
                self._settings.stripe_webhook_tolerance,
            )
            event_ref = payload.get("id") or body_digest(raw_body)
            event_type = str(payload.get("type") or "unknown")
        elif provider == ProviderKind.APP_STORE:
            payload = self._verify_app_store(raw_body)
            event_ref = payload.get("notificationUUID") or body_digest(raw_body)
            event_type = str(payload.get("notificationType") or "unknown")
            if payload.get("subtype"):
                event_type = f"{event_type}:{payload['subtype']}"
        else:
            raise VerificationError(f"Provider {provider.value!r} does not send notifications")

        event: NormalizedEvent | None = None
        error: str | None = None
        try:
            event = self._normalize(provider, payload)
        except PayloadError as exc:
            error = str(exc)
            logger.warning("Unprocessable %s event %s: %s", provider.value, event_ref, error)

        status = EventStatus.PENDING if event is not None else EventStatus.FAILED
        try:
            async with session_scope(self._session_factory) as session:
                repo = IngestedEventRepository(session)
                row, created = await repo.insert_if_absent(
                    provider=provider,
                    event_ref=event_ref,
                    event_type=event_type,
                    raw_payload=payload,
                    normalized_payload=event.model_dump(mode="json") if event is not None else None,
                    status=status,
                    error=error,
                )
                stored_status = EventStatus(row.status)
                stored_payload = row.normalized_payload
        except SQLAlchemyError as exc:
            logger.error("Failed to record %s event %s", provider.value, event_ref, exc_info=True)
            raise TransientProviderError(f"Could not record event {event_ref}") from exc

        if created:
            logger.info("Ingested %s event %s (%s)", provider.value, event_ref, event_type)
            return IngestResult(
                provider=provider,
                event_ref=event_ref,
                event_type=event_type,
                status=status,
                event=event,
                should_process=event is not None,
            )

        # Redelivery.  Only a record stranded in ``pending`` is picked up again.
        replay: NormalizedEvent | None = None
        if stored_status == EventStatus.PENDING and stored_payload is not None:
            replay = parse_event(stored_payload)
            logger.info("Redelivered %s event %s is still pending; reprocessing", provider.value, event_ref)
        else:
            logger.info("Duplicate %s event %s skipped (status=%s)", provider.value, event_ref, stored_status.value)
        return IngestResult(
            provider=provider,
            event_ref=event_ref,
            event_type=event_type,
            duplicate=True,
            status=stored_status,
            event=replay,
            should_process=replay is not None,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _verify_app_store(self, raw_body: bytes) -> dict[str, Any]:
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise VerificationError("Notification body is not valid JSON") from exc
        if not isinstance(body, dict) or not body.get("signedPayload"):
            raise VerificationError("Notification has no signedPayload")
        return self._verifier.verify(body["signedPayload"])

    def _normalize(self, provider: ProviderKind, payload: dict[str, Any]) -> NormalizedEvent:
        if provider == ProviderKind.STRIPE:
            return normalize_stripe_event(payload, self._price_tiers)
        return normalize_app_store_notification(
            payload,
            self._verifier,
            bundle_id=self._settings.apple_bundle_id,
        )
