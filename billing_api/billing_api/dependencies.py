"""FastAPI dependency injection for settings, sessions and billing services.

Long-lived objects (engine, session factory, event bus, provider clients)
are created in the application lifespan and stored on ``app.state``; the
dependencies below only read them back, so tests can swap any of them by
assigning a different object to ``app.state`` or via
``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_core.config import BillingSettings, load_settings
from billing_core.ingestion import IngestionGateway
from billing_core.reconciliation import EventProcessor
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import APISettings, load_api_settings
from billing_api.services.app_store_client import AppStoreClient
from billing_api.services.billing_service import BillingService
from billing_api.services.event_bus import EventBus
from billing_api.services.stripe_client import StripeClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_billing_settings_cache: BillingSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_billing_settings() -> BillingSettings:
    """Return the cached :class:`BillingSettings` singleton."""
    global _billing_settings_cache  # noqa: PLW0603
    if _billing_settings_cache is None:
        _billing_settings_cache = load_settings()
    return _billing_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
BillingSettingsDep = Annotated[BillingSettings, Depends(get_billing_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Return the session factory created during application startup."""
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        raise RuntimeError("Database engine has not been initialised. Ensure the application lifespan has run.")
    return factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession``.

    The session commits on clean exit and rolls back on exception.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Event bus and provider clients
# ---------------------------------------------------------------------------


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_app_store_client(request: Request) -> AppStoreClient:
    return request.app.state.app_store_client


def get_stripe_client(request: Request, billing_settings: BillingSettingsDep) -> StripeClient:
    client = getattr(request.app.state, "stripe_client", None)
    return client if client is not None else StripeClient(billing_settings)


EventBusDep = Annotated[EventBus, Depends(get_event_bus)]
AppStoreClientDep = Annotated[AppStoreClient, Depends(get_app_store_client)]
StripeClientDep = Annotated[StripeClient, Depends(get_stripe_client)]

# ---------------------------------------------------------------------------
# Billing services
# ---------------------------------------------------------------------------


def get_gateway(
    request: Request,
    factory: SessionFactoryDep,
    billing_settings: BillingSettingsDep,
) -> IngestionGateway:
    """Build the ingestion gateway around the startup-loaded JWS verifier."""
    verifier = getattr(request.app.state, "app_store_verifier", None)
    return IngestionGateway(factory, billing_settings, app_store_verifier=verifier)


def get_processor(factory: SessionFactoryDep, billing_settings: BillingSettingsDep) -> EventProcessor:
    return EventProcessor(factory, billing_settings)


def get_billing_service(
    factory: SessionFactoryDep,
    billing_settings: BillingSettingsDep,
    stripe_client: StripeClientDep,
    app_store_client: AppStoreClientDep,
    event_bus: EventBusDep,
) -> BillingService:
    return BillingService(
        factory,
        billing_settings,
        stripe_client=stripe_client,
        app_store_client=app_store_client,
        event_bus=event_bus,
    )


GatewayDep = Annotated[IngestionGateway, Depends(get_gateway)]
ProcessorDep = Annotated[EventProcessor, Depends(get_processor)]
BillingServiceDep = Annotated[BillingService, Depends(get_billing_service)]
