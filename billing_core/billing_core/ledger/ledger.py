"""Idempotent billing ledger.

One row per provider invoice.  Replaying an outcome for an invoice that is
already recorded only moves its status, so duplicate "paid" notifications
and a later refund on the same invoice never create extra rows.  The status
follows the newest provider timestamp, not the order of delivery.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.errors import PayloadError
from billing_core.models.events import LedgerOutcome
from billing_core.state.repository import LedgerRepository
from billing_core.state.tables import BillingLedgerTable

logger = logging.getLogger(__name__)


def normalize_currency(currency: str | None, default_currency: str) -> str:
    """Return a lower-case ISO 4217 code, using *default_currency* when absent."""
    code = (currency or default_currency).strip().lower()
    if len(code) != 3 or not code.isalpha():
        raise PayloadError(f"Invalid currency code: {currency!r}")
    return code


class BillingLedger:
    """Records invoice and payment outcomes against a user."""

    def __init__(self, session: AsyncSession, *, default_currency: str = "usd") -> None:
        self._repo = LedgerRepository(session)
        self._default_currency = default_currency

    async def record_outcome(
        self,
        user_id: str,
        provider_invoice_ref: str,
        outcome: LedgerOutcome,
        *,
        occurred_at: datetime | None = None,
    ) -> BillingLedgerTable:
        """Insert a ledger entry or update the status of an existing one.

        Parameters
        ----------
        user_id:
            Canonical owner of the invoice.
        provider_invoice_ref:
            Provider invoice id; the idempotency key.
        outcome:
            Amount (minor units), currency, status and descriptive fields.
        occurred_at:
            Provider timestamp of the outcome.  An outcome older than the
            stored status leaves the row unchanged.  Defaults to now.

        Returns
        -------
        BillingLedgerTable
            The stored row after the upsert.
        """
        now = datetime.now(UTC)
        row = await self._repo.upsert(
            {
                "user_id": user_id,
                "provider_invoice_ref": provider_invoice_ref,
                "entry_type": outcome.entry_type.value,
                "amount": outcome.amount,
                "currency": normalize_currency(outcome.currency, self._default_currency),
                "status": outcome.status.value,
                "status_event_at": occurred_at or now,
                "period_start": outcome.period_start,
                "period_end": outcome.period_end,
                "description": outcome.description,
                "hosted_invoice_url": outcome.hosted_invoice_url,
                "invoice_pdf_url": outcome.invoice_pdf_url,
                "created_at": now,
                "updated_at": now,
            }
        )
        if row.status != outcome.status.value:
            logger.info(
                "Ledger %s keeps status=%s; %s outcome is older",
                provider_invoice_ref,
                row.status,
                outcome.status.value,
            )
            return row
        logger.info(
            "Ledger %s user=%s status=%s amount=%d %s",
            provider_invoice_ref,
            user_id,
            row.status,
            row.amount,
            row.currency,
        )
        return row

    async def history(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[BillingLedgerTable], int]:
        return await self._repo.list_for_user(user_id, limit=limit, offset=offset)
