"""Dual-provider identity linker.

Maps the identity a provider attaches to a notification back to a local
user.  Stripe notifications carry a customer id; App Store notifications
carry the ``originalTransactionId``, which stays the same across renewals
while the per-renewal ``transactionId`` changes.  A consumable purchase is
its own original transaction, so its owner comes from the recorded
transaction instead of a subscription row.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models.enums import ProviderKind
from billing_core.state.repository import ProviderTransactionRepository, SubscriptionRepository

logger = logging.getLogger(__name__)


class IdentityLinker:
    """Reverse lookups from provider references to user ids."""

    def __init__(self, session: AsyncSession) -> None:
        self._subscriptions = SubscriptionRepository(session)
        self._transactions = ProviderTransactionRepository(session)

    async def resolve_owner(self, provider: ProviderKind, ref: str | None) -> str | None:
        """Return the user owning *ref*, or ``None`` when nobody is linked.

        ``None`` is a normal outcome: test events and provider customers
        created outside the app have no local owner.
        """
        if not ref:
            return None
        if provider == ProviderKind.STRIPE:
            user_id = await self._subscriptions.find_user_by_customer_ref(ref)
        elif provider == ProviderKind.APP_STORE:
            user_id = await self._subscriptions.find_user_by_original_transaction(ref)
            if user_id is None:
                transaction = await self._transactions.get(ref)
                user_id = transaction.user_id if transaction is not None else None
        else:
            # Local events already name their user.
            user_id = None
        if user_id is None:
            logger.info("No local owner for %s reference %s", provider.value, ref)
        return user_id

    async def resolve_subscription(self, subscription_ref: str | None) -> str | None:
        """Return the user whose row carries *subscription_ref*."""
        if not subscription_ref:
            return None
        return await self._subscriptions.find_user_by_subscription_ref(subscription_ref)
