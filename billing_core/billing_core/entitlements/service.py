"""Per-user entitlement snapshot maintenance and consumable usage."""

from __future__ import annotations

import logging

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.entitlements.consumables import ConsumableGrant, daily_limit
from billing_core.entitlements.matrix import resolve
from billing_core.models.enums import ConsumableKind, Tier, coerce_tier, tier_rank
from billing_core.state.repository import EntitlementRepository
from billing_core.state.tables import EntitlementSnapshotTable

logger = logging.getLogger(__name__)

_EXHAUSTED_REASONS: dict[ConsumableKind, str] = {
    ConsumableKind.LIKE: "Daily like limit reached",
    ConsumableKind.SUPER_LIKE: "No super likes remaining",
    ConsumableKind.BOOST: "No boosts remaining",
}


class UsageResult(BaseModel):
    allowed: bool
    reason: str | None = None
    boosts_remaining: int
    super_likes_remaining: int
    daily_likes_used: int
    daily_super_likes_used: int


class EntitlementService:
    """Keeps ``entitlement_snapshots`` in line with the subscription tier."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = EntitlementRepository(session)
        self._session = session

    async def sync(self, user_id: str, tier: Tier) -> EntitlementSnapshotTable:
        """Recompute the cached feature set for *tier*.

        On first creation or an upgrade the boost and super-like balances are
        topped up to at least the tier allowance.  Downgrades keep whatever
        balance the user already holds, purchased packs included.
        """
        row, created = await self._repo.ensure(user_id)
        matrix = resolve(tier)
        previous = coerce_tier(row.tier)

        if created or tier_rank(tier) > tier_rank(previous):
            row.boosts_remaining = max(row.boosts_remaining, matrix.profile_boost_count)
            row.super_likes_remaining = max(row.super_likes_remaining, matrix.super_like_allowance)
            logger.info("Topped up allowances for user=%s tier=%s", user_id, tier.value)

        row.tier = tier.value
        row.features_json = matrix.model_dump(mode="json")
        await self._session.flush()
        return row

    async def snapshot(self, user_id: str) -> EntitlementSnapshotTable:
        row, _ = await self._repo.ensure(user_id)
        return row

    async def credit(self, user_id: str, grant: ConsumableGrant) -> EntitlementSnapshotTable:
        await self._repo.credit(user_id, grant.kind, grant.quantity)
        logger.info("Credited %d %s to user=%s", grant.quantity, grant.kind.value, user_id)
        return await self.snapshot(user_id)

    async def debit(self, user_id: str, grant: ConsumableGrant) -> EntitlementSnapshotTable:
        """Take back a refunded grant; balances already spent stop at zero."""
        await self._repo.debit(user_id, grant.kind, grant.quantity)
        logger.info("Debited %d %s from user=%s", grant.quantity, grant.kind.value, user_id)
        return await self.snapshot(user_id)

    async def consume(self, user_id: str, kind: ConsumableKind, tier: Tier) -> UsageResult:
        """Debit one *kind* for a user entitled to *tier*."""
        allowed = await self._repo.consume(user_id, kind, daily_limit(kind, resolve(tier)))
        row = await self.snapshot(user_id)
        return UsageResult(
            allowed=allowed,
            reason=None if allowed else _EXHAUSTED_REASONS[kind],
            boosts_remaining=row.boosts_remaining,
            super_likes_remaining=row.super_likes_remaining,
            daily_likes_used=row.daily_likes_used,
            daily_super_likes_used=row.daily_super_likes_used,
        )
