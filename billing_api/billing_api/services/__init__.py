"""Outbound provider clients and user-facing billing operations."""
