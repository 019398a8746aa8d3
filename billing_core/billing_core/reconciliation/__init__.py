"""Subscription reconciliation: identity linking, transitions and retries."""

from billing_core.reconciliation.identity import IdentityLinker
from billing_core.reconciliation.processor import EventProcessor, ProcessResult
from billing_core.reconciliation.retry import RetryConfig, async_retry_with_backoff
from billing_core.reconciliation.state_machine import (
    ApplyResult,
    SubscriptionDelta,
    SubscriptionStateMachine,
)

__all__ = [
    "ApplyResult",
    "EventProcessor",
    "IdentityLinker",
    "ProcessResult",
    "RetryConfig",
    "SubscriptionDelta",
    "SubscriptionStateMachine",
    "async_retry_with_backoff",
]
