"""Canonical enumerations shared by every billing component."""

from __future__ import annotations

from enum import Enum


class Tier(str, Enum):
    """Ordered subscription tier.  Compare with :func:`tier_rank`."""

    DISCOVER = "discover"
    CONNECT = "connect"
    COMMUNITY = "community"


LOWEST_TIER: Tier = Tier.DISCOVER

_TIER_RANK: dict[Tier, int] = {
    Tier.DISCOVER: 1,
    Tier.CONNECT: 2,
    Tier.COMMUNITY: 3,
}


def tier_rank(tier: Tier | str) -> int:
    """Return the 1-based position of *tier*; unknown values rank lowest."""
    try:
        return _TIER_RANK[Tier(tier)]
    except ValueError:
        return _TIER_RANK[LOWEST_TIER]


def coerce_tier(value: Tier | str | None) -> Tier:
    """Return *value* as a :class:`Tier`, falling back to the lowest tier."""
    if value is None:
        return LOWEST_TIER
    try:
        return Tier(value)
    except ValueError:
        return LOWEST_TIER


class SubscriptionStatus(str, Enum):
    """Canonical subscription lifecycle state."""

    PENDING = "pending"
    ACTIVE = "active"
    BILLING_RETRY = "billing_retry"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED}
)


class ProviderKind(str, Enum):
    """External billing provider."""

    STRIPE = "stripe"
    APP_STORE = "app_store"
    LOCAL = "local"


class LedgerStatus(str, Enum):
    """Status of a provider invoice mirrored into the ledger."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"
    REFUNDED = "refunded"


class LedgerEntryType(str, Enum):
    SUBSCRIPTION = "subscription"
    CONSUMABLE = "consumable"


class EventStatus(str, Enum):
    """Processing state of an ingested provider notification."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    CONSUMABLE = "consumable"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"


class ConsumableKind(str, Enum):
    """Countable actions debited against the entitlement snapshot."""

    LIKE = "like"
    SUPER_LIKE = "super_like"
    BOOST = "boost"
