"""Shared fixtures for billing core unit tests.

Provides a per-test SQLite database, billing settings with test secrets,
Stripe webhook signing, and a throwaway ES256 certificate chain for App
Store JWS tokens.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import jwt
import pytest
import pytest_asyncio
from billing_core.config import BillingSettings, load_settings
from billing_core.state.database import get_session_factory
from billing_core.state.sqlite_adapter import create_tables, get_local_engine
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> BillingSettings:
    return load_settings(
        stripe_secret_key="sk_test_xxx",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        apple_shared_secret="apple_shared_secret",
        apply_retry_base_delay=0.001,
    )


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "billing.db")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


# ---------------------------------------------------------------------------
# Stripe signing
# ---------------------------------------------------------------------------


def sign_stripe_payload(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture()
def stripe_signer():
    return sign_stripe_payload


# ---------------------------------------------------------------------------
# App Store certificate chain
# ---------------------------------------------------------------------------


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(
    subject: str,
    key: ec.EllipticCurvePrivateKey,
    issuer: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    *,
    ca: bool,
) -> x509.Certificate:
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


def _der_b64(cert: x509.Certificate) -> str:
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")


class AppStoreChain:
    """Root, intermediate and leaf certificates able to sign App Store JWS tokens."""

    def __init__(self, root_name: str = "Test Apple Root CA") -> None:
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        self.root = _certificate(root_name, self.root_key, root_name, self.root_key, ca=True)
        self.intermediate = _certificate(
            "Test WWDR Intermediate", self.intermediate_key, root_name, self.root_key, ca=True
        )
        self.leaf = _certificate(
            "Test App Store Signing", self.leaf_key, "Test WWDR Intermediate", self.intermediate_key, ca=False
        )

    def x5c(self, *, include_root: bool = True) -> list[str]:
        chain = [_der_b64(self.leaf), _der_b64(self.intermediate)]
        if include_root:
            chain.append(_der_b64(self.root))
        return chain

    def sign(
        self,
        claims: dict[str, Any],
        *,
        x5c: list[str] | None = None,
        key: ec.EllipticCurvePrivateKey | None = None,
    ) -> str:
        return jwt.encode(
            claims,
            key or self.leaf_key,
            algorithm="ES256",
            headers={"x5c": x5c if x5c is not None else self.x5c()},
        )

    def root_pem(self) -> bytes:
        return self.root.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def app_store_chain() -> AppStoreChain:
    return AppStoreChain()


def app_store_notification(
    chain: AppStoreChain,
    notification_type: str,
    *,
    subtype: str | None = None,
    uuid: str = "notif-1",
    signed_date_ms: int | None = None,
    transaction: dict[str, Any] | None = None,
    renewal: dict[str, Any] | None = None,
    bundle_id: str = "com.kindred.app",
) -> dict[str, Any]:
    """Build the claims of an outer ``signedPayload`` with signed nested tokens."""
    data: dict[str, Any] = {"bundleId": bundle_id, "environment": "Sandbox"}
    if transaction is not None:
        data["signedTransactionInfo"] = chain.sign(transaction)
    if renewal is not None:
        data["signedRenewalInfo"] = chain.sign(renewal)
    payload: dict[str, Any] = {
        "notificationType": notification_type,
        "notificationUUID": uuid,
        "signedDate": signed_date_ms if signed_date_ms is not None else int(time.time() * 1000),
        "data": data,
    }
    if subtype is not None:
        payload["subtype"] = subtype
    return payload


@pytest.fixture()
def notification_builder(app_store_chain: AppStoreChain):
    def _build(notification_type: str, **kwargs: Any) -> dict[str, Any]:
        return app_store_notification(app_store_chain, notification_type, **kwargs)

    return _build


@pytest.fixture(scope="session")
def other_chain() -> AppStoreChain:
    """An unrelated chain whose root shares the default root name."""
    return AppStoreChain()
