"""Billing-event reconciliation and entitlement core for Kindred."""

__version__ = "0.4.0"
