"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on :func:`billing_core.state.database.session_scope`).

Rows keyed by a provider identifier are written with dialect-aware
``INSERT ... ON CONFLICT`` so that concurrent deliveries of the same
notification collapse onto one row without explicit locking.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models.enums import (
    LOWEST_TIER,
    ConsumableKind,
    EventStatus,
    ProviderKind,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)
from billing_core.state.tables import (
    BillingLedgerTable,
    EntitlementSnapshotTable,
    IngestedEventTable,
    PaymentMethodTable,
    ProviderTransactionTable,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
    where: Any = None,
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    where:
        Optional condition on the existing row; the update is skipped
        when it does not hold.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
            where=where,
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
            where=where,
        )
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    The returned result's ``rowcount`` is 1 when a row was inserted and 0
    when the key already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Access to the ``subscriptions`` table.

    Mutations happen on ORM instances loaded through :meth:`get_for_update`
    so that the ``version`` column guards every write.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_user(self, user_id: str) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(SubscriptionTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_update(self, user_id: str) -> SubscriptionTable | None:
        """Load the user's row with a row lock where the dialect supports it."""
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(
        self,
        user_id: str,
        *,
        provider: ProviderKind,
        customer_ref: str | None = None,
    ) -> SubscriptionTable:
        """Create a ``pending`` lowest-tier row if the user has none, then lock it."""
        now = datetime.now(UTC)
        result = await _dialect_upsert_nothing(
            self._session,
            SubscriptionTable,
            values={
                "user_id": user_id,
                "provider": provider.value,
                "tier": LOWEST_TIER.value,
                "status": SubscriptionStatus.PENDING.value,
                "provider_customer_ref": customer_ref,
                "cancel_at_period_end": False,
                "auto_renew": True,
                "is_trial": False,
                "version": 1,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["user_id"],
        )
        if (result.rowcount or 0) > 0:  # type: ignore[attr-defined]
            logger.info("Created pending subscription for user=%s provider=%s", user_id, provider.value)
        row = await self.get_for_update(user_id)
        assert row is not None  # noqa: S101
        return row

    async def find_user_by_customer_ref(self, customer_ref: str) -> str | None:
        stmt = select(SubscriptionTable.user_id).where(SubscriptionTable.provider_customer_ref == customer_ref)
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_user_by_original_transaction(self, original_transaction_ref: str) -> str | None:
        stmt = select(SubscriptionTable.user_id).where(
            SubscriptionTable.provider_original_transaction_ref == original_transaction_ref
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_user_by_subscription_ref(self, subscription_ref: str) -> str | None:
        stmt = select(SubscriptionTable.user_id).where(
            SubscriptionTable.provider_subscription_ref == subscription_ref
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def flush(self) -> None:
        await self._session.flush()


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------

_BALANCE_COLUMNS: dict[ConsumableKind, str] = {
    ConsumableKind.BOOST: "boosts_remaining",
    ConsumableKind.SUPER_LIKE: "super_likes_remaining",
}


class EntitlementRepository:
    """Access to the ``entitlement_snapshots`` table.

    Counter changes are single ``UPDATE`` statements with the bound in the
    ``WHERE`` clause, so two concurrent debits can never overdraw a balance.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> EntitlementSnapshotTable | None:
        stmt = (
            select(EntitlementSnapshotTable)
            .where(EntitlementSnapshotTable.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, user_id: str) -> tuple[EntitlementSnapshotTable, bool]:
        """Return the user's snapshot, creating an empty one if needed.

        Returns
        -------
        tuple
            ``(row, created)``.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            EntitlementSnapshotTable,
            values={
                "user_id": user_id,
                "tier": LOWEST_TIER.value,
                "boosts_remaining": 0,
                "super_likes_remaining": 0,
                "daily_likes_used": 0,
                "daily_super_likes_used": 0,
                "features_json": {},
                "updated_at": datetime.now(UTC),
            },
            index_elements=["user_id"],
        )
        row = await self.get(user_id)
        assert row is not None  # noqa: S101
        return row, (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def credit(self, user_id: str, kind: ConsumableKind, quantity: int) -> None:
        """Add *quantity* to the balance for *kind*."""
        name = _BALANCE_COLUMNS[kind]
        column = getattr(EntitlementSnapshotTable, name)
        await self.ensure(user_id)
        await self._session.execute(
            update(EntitlementSnapshotTable)
            .where(EntitlementSnapshotTable.user_id == user_id)
            .values({name: column + quantity, "updated_at": datetime.now(UTC)})
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()

    async def debit(self, user_id: str, kind: ConsumableKind, quantity: int) -> None:
        """Remove up to *quantity* from the balance for *kind*, stopping at zero."""
        name = _BALANCE_COLUMNS[kind]
        column = getattr(EntitlementSnapshotTable, name)
        await self.ensure(user_id)
        await self._session.execute(
            update(EntitlementSnapshotTable)
            .where(EntitlementSnapshotTable.user_id == user_id)
            .values({name: case((column > quantity, column - quantity), else_=0), "updated_at": datetime.now(UTC)})
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()

    async def consume(self, user_id: str, kind: ConsumableKind, daily_limit: int) -> bool:
        """Debit one unit of *kind*.

        Parameters
        ----------
        user_id:
            Owner of the snapshot.
        kind:
            The action being used.
        daily_limit:
            Maximum uses per day for likes; ``-1`` for unlimited.

        Returns
        -------
        bool
            ``False`` when the balance or daily limit is exhausted.
        """
        await self.ensure(user_id)
        table = EntitlementSnapshotTable
        stmt = update(table).where(table.user_id == user_id)
        now = datetime.now(UTC)

        if kind == ConsumableKind.LIKE:
            if daily_limit >= 0:
                stmt = stmt.where(table.daily_likes_used < daily_limit)
            stmt = stmt.values(daily_likes_used=table.daily_likes_used + 1, updated_at=now)
        elif kind == ConsumableKind.SUPER_LIKE:
            stmt = stmt.where(table.super_likes_remaining > 0).values(
                super_likes_remaining=table.super_likes_remaining - 1,
                daily_super_likes_used=table.daily_super_likes_used + 1,
                updated_at=now,
            )
        else:
            stmt = stmt.where(table.boosts_remaining > 0).values(
                boosts_remaining=table.boosts_remaining - 1,
                updated_at=now,
            )

        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------


class LedgerRepository:
    """Access to the ``billing_ledger`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, values: dict[str, Any]) -> BillingLedgerTable:
        """Insert a ledger row, or update status only if the invoice exists.

        An existing row keeps its status when its ``status_event_at`` is
        newer than the incoming one.
        """
        table = BillingLedgerTable
        await _dialect_upsert(
            self._session,
            table,
            values=values,
            index_elements=["provider_invoice_ref"],
            update_columns=["status", "status_event_at", "updated_at"],
            where=or_(
                table.status_event_at.is_(None),
                table.status_event_at <= values["status_event_at"],
            ),
        )
        await self._session.flush()
        row = await self.get(values["provider_invoice_ref"])
        assert row is not None  # noqa: S101
        return row

    async def get(self, provider_invoice_ref: str) -> BillingLedgerTable | None:
        stmt = (
            select(BillingLedgerTable)
            .where(BillingLedgerTable.provider_invoice_ref == provider_invoice_ref)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[BillingLedgerTable], int]:
        """List ledger entries for *user_id*, newest first.

        Returns
        -------
        tuple
            ``(entries, total_count)``.
        """
        count_stmt = select(func.count()).select_from(BillingLedgerTable).where(BillingLedgerTable.user_id == user_id)
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(BillingLedgerTable)
            .where(BillingLedgerTable.user_id == user_id)
            .order_by(BillingLedgerTable.created_at.desc(), BillingLedgerTable.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total


# ---------------------------------------------------------------------------
# IngestedEventRepository
# ---------------------------------------------------------------------------


class IngestedEventRepository:
    """Access to the ``ingested_events`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(
        self,
        *,
        provider: ProviderKind,
        event_ref: str,
        event_type: str,
        raw_payload: dict[str, Any],
        normalized_payload: dict[str, Any] | None,
        status: EventStatus = EventStatus.PENDING,
        error: str | None = None,
    ) -> tuple[IngestedEventTable, bool]:
        """Insert an event record keyed by ``(provider, event_ref)``.

        Returns
        -------
        tuple
            ``(row, created)``; ``created`` is ``False`` on redelivery.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            IngestedEventTable,
            values={
                "provider": provider.value,
                "provider_event_ref": event_ref,
                "event_type": event_type,
                "raw_payload": raw_payload,
                "normalized_payload": normalized_payload,
                "status": status.value,
                "error": error,
                "received_at": datetime.now(UTC),
            },
            index_elements=["provider", "provider_event_ref"],
        )
        await self._session.flush()
        row = await self.get(provider, event_ref)
        assert row is not None  # noqa: S101
        return row, (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get(self, provider: ProviderKind, event_ref: str) -> IngestedEventTable | None:
        stmt = (
            select(IngestedEventTable)
            .where(
                IngestedEventTable.provider == provider.value,
                IngestedEventTable.provider_event_ref == event_ref,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark(
        self,
        provider: ProviderKind,
        event_ref: str,
        status: EventStatus,
        error: str | None = None,
    ) -> None:
        """Set the processing status of an event record."""
        await self._session.execute(
            update(IngestedEventTable)
            .where(
                IngestedEventTable.provider == provider.value,
                IngestedEventTable.provider_event_ref == event_ref,
            )
            .values(status=status.value, error=error, processed_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# ProviderTransactionRepository
# ---------------------------------------------------------------------------


class ProviderTransactionRepository:
    """Access to the ``provider_transactions`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, transaction_ref: str) -> ProviderTransactionTable | None:
        stmt = select(ProviderTransactionTable).where(
            ProviderTransactionTable.provider_transaction_ref == transaction_ref
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record(
        self,
        *,
        transaction_ref: str,
        user_id: str,
        product_ref: str,
        transaction_type: TransactionType,
        original_transaction_ref: str | None = None,
    ) -> bool:
        """Record a transaction; returns ``False`` if it was already recorded."""
        result = await _dialect_upsert_nothing(
            self._session,
            ProviderTransactionTable,
            values={
                "provider_transaction_ref": transaction_ref,
                "original_transaction_ref": original_transaction_ref,
                "user_id": user_id,
                "product_ref": product_ref,
                "transaction_type": transaction_type.value,
                "status": TransactionStatus.COMPLETED.value,
                "processed_at": datetime.now(UTC),
            },
            index_elements=["provider_transaction_ref"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def mark_refunded(self, transaction_ref: str) -> bool:
        """Mark a transaction refunded; ``False`` if unknown or already refunded."""
        result = await self._session.execute(
            update(ProviderTransactionTable)
            .where(
                ProviderTransactionTable.provider_transaction_ref == transaction_ref,
                ProviderTransactionTable.status != TransactionStatus.REFUNDED.value,
            )
            .values(status=TransactionStatus.REFUNDED.value)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PaymentMethodRepository
# ---------------------------------------------------------------------------


class PaymentMethodRepository:
    """Access to the ``payment_methods`` mirror table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(
        self,
        *,
        user_id: str,
        payment_method_ref: str,
        brand: str | None = None,
        last4: str | None = None,
        exp_month: int | None = None,
        exp_year: int | None = None,
    ) -> None:
        await _dialect_upsert(
            self._session,
            PaymentMethodTable,
            values={
                "provider_payment_method_ref": payment_method_ref,
                "user_id": user_id,
                "brand": brand,
                "last4": last4,
                "exp_month": exp_month,
                "exp_year": exp_year,
                "is_default": False,
                "created_at": datetime.now(UTC),
            },
            index_elements=["provider_payment_method_ref"],
            update_columns=["user_id", "brand", "last4", "exp_month", "exp_year"],
        )
        await self._session.flush()

    async def get(self, payment_method_ref: str) -> PaymentMethodTable | None:
        stmt = (
            select(PaymentMethodTable)
            .where(PaymentMethodTable.provider_payment_method_ref == payment_method_ref)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[PaymentMethodTable]:
        stmt = (
            select(PaymentMethodTable)
            .where(PaymentMethodTable.user_id == user_id)
            .order_by(PaymentMethodTable.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete(self, payment_method_ref: str) -> bool:
        row = await self.get(payment_method_ref)
        if row is None:
            return False
        await self._session.delete(row)
        await self._session.flush()
        return True

    async def set_default(self, user_id: str, payment_method_ref: str) -> None:
        """Flag *payment_method_ref* as the user's only default method."""
        await self._session.execute(
            update(PaymentMethodTable)
            .where(PaymentMethodTable.user_id == user_id)
            .values(is_default=PaymentMethodTable.provider_payment_method_ref == payment_method_ref)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
