"""Shared fixtures for billing API tests.

Provides a per-test SQLite database wired into a FastAPI app built by
``create_app()``, mocked Stripe and App Store clients, a recording event
bus, and bearer-token helpers.  ASGITransport does not run the lifespan, so
the fixtures place everything the lifespan would create on ``app.state``.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import jwt
import pytest
import pytest_asyncio
from billing_api.config import APISettings
from billing_api.dependencies import get_billing_settings, get_settings
from billing_api.main import create_app
from billing_api.services.app_store_client import AppStoreClient
from billing_api.services.event_bus import EventBus, EventPayload
from billing_api.services.stripe_client import StripeClient
from billing_core.config import BillingSettings, load_settings
from billing_core.ingestion import AppStoreJWSVerifier
from billing_core.models.enums import ProviderKind
from billing_core.state.database import get_session_factory, session_scope
from billing_core.state.repository import SubscriptionRepository
from billing_core.state.sqlite_adapter import create_tables, get_local_engine
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

TEST_JWT_SECRET = "test-secret-key-for-kindred-billing-tests"
STRIPE_WEBHOOK_SECRET = "whsec_api_test"
TEST_USER = "user-123"


# ---------------------------------------------------------------------------
# Tokens and signatures
# ---------------------------------------------------------------------------


def make_token(
    sub: str = TEST_USER,
    *,
    email: str | None = "user@example.com",
    expires_in: int = 3600,
    secret: str = TEST_JWT_SECRET,
) -> str:
    """Issue an HS256 bearer token the way the auth service does."""
    now = int(time.time())
    claims: dict[str, Any] = {"sub": sub, "iat": now, "exp": now + expires_in}
    if email is not None:
        claims["email"] = email
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(sub: str = TEST_USER) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub)}"}


def sign_stripe_payload(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture()
def token_factory():
    return make_token


@pytest.fixture()
def stripe_signer():
    return sign_stripe_payload


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_settings(tmp_path: Path) -> APISettings:
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        jwt_secret=TEST_JWT_SECRET,
    )


@pytest.fixture()
def billing_settings() -> BillingSettings:
    return load_settings(
        stripe_secret_key="sk_test_xxx",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        apple_shared_secret="apple_shared_secret",
        apply_retry_base_delay=0.001,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "billing.db")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest.fixture()
def seed_subscription(session_factory):
    """Create a canonical row directly, bypassing provider calls."""

    async def _seed(
        user_id: str = TEST_USER,
        *,
        provider: ProviderKind = ProviderKind.STRIPE,
        **fields: Any,
    ):
        async with session_scope(session_factory) as session:
            row = await SubscriptionRepository(session).ensure(
                user_id,
                provider=provider,
                customer_ref=fields.pop("provider_customer_ref", None),
            )
            for key, value in fields.items():
                setattr(row, key, value)
            return row

    return _seed


# ---------------------------------------------------------------------------
# Provider clients and event bus
# ---------------------------------------------------------------------------


def stripe_subscription(
    *,
    sub_id: str = "sub_test",
    customer: str = "cus_test",
    price: str = "price_connect_monthly",
    status: str = "active",
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    """A subscription object as the Stripe API returns it."""
    now = int(time.time())
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": now - 60,
        "current_period_end": now + 30 * 86400,
        "items": {"data": [{"id": "si_test", "price": {"id": price}}]},
        "latest_invoice": {"id": "in_first", "payment_intent": {"client_secret": "pi_secret_123"}},
    }


@pytest.fixture()
def stripe_subscription_factory():
    return stripe_subscription


@pytest.fixture()
def mock_stripe() -> AsyncMock:
    client = AsyncMock(spec=StripeClient)
    client.create_customer.return_value = {"id": "cus_test"}
    client.create_subscription.return_value = stripe_subscription()
    client.change_price.return_value = stripe_subscription(price="price_community_monthly")
    client.set_cancel_at_period_end.return_value = {"id": "sub_test"}
    client.cancel_now.return_value = {"id": "sub_test", "status": "canceled"}
    client.attach_payment_method.return_value = {
        "id": "pm_card",
        "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
    }
    client.detach_payment_method.return_value = {"id": "pm_card"}
    client.set_default_payment_method.return_value = {"id": "cus_test"}
    return client


@pytest.fixture()
def mock_app_store() -> AsyncMock:
    client = AsyncMock(spec=AppStoreClient)
    client.verify_receipt.return_value = {"status": 0, "receipt": {"in_app": []}, "latest_receipt_info": []}
    return client


@pytest.fixture()
def bus_events() -> list[EventPayload]:
    return []


@pytest.fixture()
def event_bus(bus_events: list[EventPayload]) -> EventBus:
    bus = EventBus()

    async def _record(payload: EventPayload) -> None:
        bus_events.append(payload)

    bus.register_handler(_record)
    return bus


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(api_settings, billing_settings, session_factory, mock_stripe, mock_app_store, event_bus):
    application = create_app()
    application.state.session_factory = session_factory
    application.state.event_bus = event_bus
    application.state.stripe_client = mock_stripe
    application.state.app_store_client = mock_app_store
    application.state.app_store_verifier = AppStoreJWSVerifier()

    application.dependency_overrides[get_settings] = lambda: api_settings
    application.dependency_overrides[get_billing_settings] = lambda: billing_settings
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async client carrying a valid bearer token for ``TEST_USER``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=auth_headers()) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
