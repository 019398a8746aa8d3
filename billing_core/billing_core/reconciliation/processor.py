"""Runs ingested events through the identity linker and the state machine.

Each event is one unit of work: owner lookup, subscription transition,
ledger write and the ``processed`` mark commit together.  If the unit loses
an optimistic-lock race it is re-run from a fresh session.  Business
failures are recorded on the event as ``failed`` in a separate transaction,
so the notification is still acknowledged.  Transient failures propagate
and leave the event ``pending`` for redelivery.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from billing_core.config import BillingSettings
from billing_core.errors import TRANSIENT_ERRORS, BillingError, TransientProviderError
from billing_core.ingestion.gateway import IngestResult
from billing_core.models.enums import EventStatus, ProviderKind
from billing_core.models.events import NormalizedEvent
from billing_core.reconciliation.identity import IdentityLinker
from billing_core.reconciliation.retry import RetryConfig, async_retry_with_backoff
from billing_core.reconciliation.state_machine import SubscriptionDelta, SubscriptionStateMachine
from billing_core.state.database import session_scope
from billing_core.state.repository import IngestedEventRepository

logger = logging.getLogger(__name__)


class ProcessResult(BaseModel):
    """What happened to one ingested event."""

    provider: ProviderKind
    event_ref: str
    status: EventStatus
    owner: str | None = None
    delta: SubscriptionDelta | None = None
    error: str | None = None


class EventProcessor:
    """Applies ingested events and user-initiated transitions.

    Parameters
    ----------
    session_factory:
        Each unit of work opens its own session from this factory.
    settings:
        Billing settings (retry budget, default currency).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: BillingSettings,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._retry = RetryConfig(
            max_retries=settings.apply_max_retries,
            base_delay=settings.apply_retry_base_delay,
        )

    async def process(self, ingested: IngestResult) -> ProcessResult:
        """Apply an ingested event if it still needs processing.

        Raises
        ------
        TransientProviderError
            If the store failed mid-way.  The event stays ``pending``.
        ConcurrencyError
            If every attempt lost the optimistic-lock race.
        """
        event = ingested.event
        if not ingested.should_process or event is None:
            return ProcessResult(
                provider=ingested.provider,
                event_ref=ingested.event_ref,
                status=ingested.status,
            )

        try:
            result = await async_retry_with_backoff(
                lambda: self._process_once(event),
                self._retry,
                (StaleDataError,),
                operation=f"{event.provider.value} event {event.event_ref}",
            )
        except TRANSIENT_ERRORS:
            raise
        except BillingError as exc:
            logger.error("Failed to process %s event %s", event.provider.value, event.event_ref, exc_info=True)
            await self._mark_failed(event, str(exc))
            return ProcessResult(
                provider=event.provider,
                event_ref=event.event_ref,
                status=EventStatus.FAILED,
                error=str(exc),
            )
        except SQLAlchemyError as exc:
            logger.error("Store failure processing %s event %s", event.provider.value, event.event_ref, exc_info=True)
            raise TransientProviderError(f"Could not process event {event.event_ref}") from exc
        return result

    async def apply_local(self, user_id: str, event: NormalizedEvent) -> SubscriptionDelta:
        """Apply a local-origin event for *user_id* in its own transaction.

        User actions go through the same transitions as provider
        notifications, so an immediate cancel here and a provider
        ``deleted`` notification leave identical rows.
        """

        async def _once() -> SubscriptionDelta:
            async with session_scope(self._session_factory) as session:
                return await SubscriptionStateMachine(session, self._settings).apply(user_id, event)

        try:
            return await async_retry_with_backoff(
                _once,
                self._retry,
                (StaleDataError,),
                operation=f"{event.kind} for user {user_id}",
            )
        except SQLAlchemyError as exc:
            logger.error("Store failure applying %s for user=%s", event.kind, user_id, exc_info=True)
            raise TransientProviderError(f"Could not apply {event.kind}") from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _process_once(self, event: NormalizedEvent) -> ProcessResult:
        async with session_scope(self._session_factory) as session:
            owner = await self._resolve_owner(session, event)
            delta: SubscriptionDelta | None = None
            if owner is None:
                logger.info(
                    "Dropping %s event %s: no linked user for %s",
                    event.provider.value,
                    event.event_ref,
                    event.owner_ref,
                )
            else:
                delta = await SubscriptionStateMachine(session, self._settings).apply(owner, event)
            await IngestedEventRepository(session).mark(event.provider, event.event_ref, EventStatus.PROCESSED)
        return ProcessResult(
            provider=event.provider,
            event_ref=event.event_ref,
            status=EventStatus.PROCESSED,
            owner=owner,
            delta=delta,
        )

    async def _resolve_owner(self, session: AsyncSession, event: NormalizedEvent) -> str | None:
        linker = IdentityLinker(session)
        owner = await linker.resolve_owner(event.provider, event.owner_ref)
        if owner is None:
            owner = await linker.resolve_subscription(getattr(event, "subscription_ref", None))
        return owner

    async def _mark_failed(self, event: NormalizedEvent, error: str) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                await IngestedEventRepository(session).mark(
                    event.provider,
                    event.event_ref,
                    EventStatus.FAILED,
                    error=error[:2000],
                )
        except SQLAlchemyError as exc:
            raise TransientProviderError(f"Could not record failure of {event.event_ref}") from exc
