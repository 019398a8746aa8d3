"""Billing ledger."""

from billing_core.ledger.ledger import BillingLedger, normalize_currency

__all__ = ["BillingLedger", "normalize_currency"]
