"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for migrations and the repository
layer.  Uniqueness constraints on ``subscriptions.user_id``,
``ingested_events``, ``billing_ledger.provider_invoice_ref`` and
``provider_transactions.provider_transaction_ref`` are load-bearing: the
idempotency of the whole core rests on them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops the offset on storage, so naive values read back are
    re-tagged as UTC and aware values are normalised before binding.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Canonical subscription record, one per user.

    ``version`` is the optimistic-lock column: every ORM update issues
    ``UPDATE ... WHERE version = :expected`` and a concurrent writer
    surfaces as ``StaleDataError``.  ``status_event_at`` and
    ``period_event_at`` hold the provider timestamp of the last event that
    set the status and the period window respectively.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="discover")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    provider_customer_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    provider_subscription_ref: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    provider_original_transaction_ref: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    plan_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    period_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'active', 'billing_retry', 'expired', 'cancelled')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("tier IN ('discover', 'connect', 'community')", name="ck_subscriptions_tier"),
        CheckConstraint("status <> 'cancelled' OR tier = 'discover'", name="ck_subscriptions_cancelled_tier"),
        CheckConstraint(
            "current_period_start IS NULL OR current_period_end IS NULL OR current_period_end >= current_period_start",
            name="ck_subscriptions_period",
        ),
        Index("ix_subscriptions_customer", "provider_customer_ref"),
    )


# ---------------------------------------------------------------------------
# Entitlement snapshots
# ---------------------------------------------------------------------------


class EntitlementSnapshotTable(Base):
    """Consumable counters and cached feature set per user."""

    __tablename__ = "entitlement_snapshots"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="discover")
    boosts_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    super_likes_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_likes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_super_likes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    features_json: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("boosts_remaining >= 0", name="ck_entitlements_boosts"),
        CheckConstraint("super_likes_remaining >= 0", name="ck_entitlements_super_likes"),
    )


# ---------------------------------------------------------------------------
# Billing ledger
# ---------------------------------------------------------------------------


class BillingLedgerTable(Base):
    """One row per provider invoice; re-delivery updates the status only.

    ``status_event_at`` is the provider timestamp of the stored status, so a
    late delivery of an older outcome cannot overwrite a newer one.
    """

    __tablename__ = "billing_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_invoice_ref: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    status_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    hosted_invoice_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    invoice_pdf_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_billing_ledger_amount"),
        Index("ix_billing_ledger_user_created", "user_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Ingested provider events
# ---------------------------------------------------------------------------


class IngestedEventTable(Base):
    """Append-only log of verified provider notifications."""

    __tablename__ = "ingested_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_event_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    raw_payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    normalized_payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_ref", name="uq_ingested_events_ref"),
        CheckConstraint("status IN ('pending', 'processed', 'failed')", name="ck_ingested_events_status"),
        Index("ix_ingested_events_status", "status", "received_at"),
    )


# ---------------------------------------------------------------------------
# Provider transactions
# ---------------------------------------------------------------------------


class ProviderTransactionTable(Base):
    """Mobile-store purchase record used for receipt-replay protection."""

    __tablename__ = "provider_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_transaction_ref: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    original_transaction_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    product_ref: Mapped[str] = mapped_column(String(256), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_provider_transactions_user", "user_id"),)


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------


class PaymentMethodTable(Base):
    """Mirror of provider payment methods, used for ownership checks."""

    __tablename__ = "payment_methods"

    provider_payment_method_ref: Mapped[str] = mapped_column(String(256), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    brand: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    exp_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exp_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_payment_methods_user", "user_id"),)
