"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_core.state.database import get_engine, get_session_factory, session_scope
from billing_core.state.repository import (
    EntitlementRepository,
    IngestedEventRepository,
    LedgerRepository,
    PaymentMethodRepository,
    ProviderTransactionRepository,
    SubscriptionRepository,
)

__all__ = [
    "EntitlementRepository",
    "IngestedEventRepository",
    "LedgerRepository",
    "PaymentMethodRepository",
    "ProviderTransactionRepository",
    "SubscriptionRepository",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
