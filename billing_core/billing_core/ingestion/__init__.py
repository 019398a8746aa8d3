"""Inbound notification verification, normalization and deduplication."""

from billing_core.ingestion.app_store import (
    AppStoreJWSVerifier,
    normalize_app_store_notification,
    normalize_receipt,
)
from billing_core.ingestion.gateway import IngestionGateway, IngestResult
from billing_core.ingestion.stripe_events import (
    normalize_stripe_event,
    subscription_snapshot,
    verify_stripe_signature,
)

__all__ = [
    "AppStoreJWSVerifier",
    "IngestResult",
    "IngestionGateway",
    "normalize_app_store_notification",
    "normalize_receipt",
    "normalize_stripe_event",
    "subscription_snapshot",
    "verify_stripe_signature",
]
