"""Canonical domain models for the billing core."""

from billing_core.models.enums import (
    LOWEST_TIER,
    ConsumableKind,
    EventStatus,
    LedgerEntryType,
    LedgerStatus,
    ProviderKind,
    SubscriptionStatus,
    Tier,
    TransactionStatus,
    TransactionType,
    coerce_tier,
    tier_rank,
)
from billing_core.models.events import LedgerOutcome, NormalizedEvent, parse_event

__all__ = [
    "LOWEST_TIER",
    "ConsumableKind",
    "EventStatus",
    "LedgerEntryType",
    "LedgerOutcome",
    "LedgerStatus",
    "NormalizedEvent",
    "ProviderKind",
    "SubscriptionStatus",
    "Tier",
    "TransactionStatus",
    "TransactionType",
    "coerce_tier",
    "parse_event",
    "tier_rank",
]
