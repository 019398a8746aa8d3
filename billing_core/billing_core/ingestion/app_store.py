"""App Store Server Notification verification and normalization.

Notifications (V2) arrive as a JWS whose header carries the signing
certificate chain in ``x5c``.  :class:`AppStoreJWSVerifier` checks that each
certificate in the chain is issued by the next, optionally pins the last one
to the configured Apple root, and verifies the ES256 signature with the leaf
key.  Nested ``signedTransactionInfo`` / ``signedRenewalInfo`` tokens go
through the same verifier.

Legacy ``verifyReceipt`` responses are normalized here too, so both mobile
paths produce the same event shapes.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from pydantic import ValidationError

from billing_core.config import BillingEnv, BillingSettings
from billing_core.errors import PayloadError, VerificationError
from billing_core.models.enums import LedgerEntryType, LedgerStatus, ProviderKind
from billing_core.models.events import (
    AutoRenewChanged,
    Informational,
    LedgerOutcome,
    NormalizedEvent,
    Refunded,
    RenewalFailed,
    RenewalSucceeded,
    SubscriptionCreated,
    SubscriptionExpired,
)
from billing_core.vocabulary.mapper import map_product_id_to_tier, map_provider_status

logger = logging.getLogger(__name__)


class AppStoreJWSVerifier:
    """Verifies App Store JWS tokens against their ``x5c`` chain.

    Parameters
    ----------
    root_certificate:
        Apple root CA.  When set, the chain must end in this certificate or
        in one issued by it.
    require_root:
        Refuse every token when no root certificate is configured.
    """

    def __init__(
        self,
        root_certificate: x509.Certificate | None = None,
        *,
        require_root: bool = False,
    ) -> None:
        self._root = root_certificate
        self._require_root = require_root

    @classmethod
    def from_settings(cls, settings: BillingSettings) -> AppStoreJWSVerifier:
        root: x509.Certificate | None = None
        if settings.apple_root_certificate_path is not None:
            root = load_certificate(settings.apple_root_certificate_path)
        elif settings.environment == BillingEnv.SANDBOX:
            logger.warning("App Store root certificate not configured; chain is not pinned")
        return cls(root, require_root=settings.environment == BillingEnv.PRODUCTION)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the verified claims of *token*.

        Raises
        ------
        VerificationError
            If the token is malformed, the chain is broken or unpinned, or
            the signature does not match the leaf certificate.
        """
        if not isinstance(token, str) or not token:
            raise VerificationError("Missing signed payload")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise VerificationError("Malformed signed payload") from exc

        if header.get("alg") != "ES256":
            raise VerificationError(f"Unexpected JWS algorithm: {header.get('alg')!r}")
        chain = header.get("x5c")
        if not isinstance(chain, list) or not chain:
            raise VerificationError("Missing x5c certificate chain")

        try:
            certs = [x509.load_der_x509_certificate(base64.b64decode(entry)) for entry in chain]
        except (TypeError, ValueError) as exc:
            raise VerificationError("Invalid x5c certificate") from exc

        self._verify_chain(certs)

        try:
            return jwt.decode(token, key=certs[0].public_key(), algorithms=["ES256"])  # type: ignore[arg-type]
        except jwt.PyJWTError as exc:
            raise VerificationError("Invalid signature") from exc

    def _verify_chain(self, certs: list[x509.Certificate]) -> None:
        now = datetime.now(UTC)
        for cert in certs:
            if not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
                raise VerificationError("Certificate in x5c chain is outside its validity window")

        for child, issuer in zip(certs, certs[1:]):
            try:
                child.verify_directly_issued_by(issuer)
            except (InvalidSignature, TypeError, ValueError) as exc:
                raise VerificationError("Broken x5c certificate chain") from exc

        if self._root is None:
            if self._require_root:
                raise VerificationError("App Store root certificate is not configured")
            return

        last = certs[-1]
        if last.fingerprint(hashes.SHA256()) == self._root.fingerprint(hashes.SHA256()):
            return
        try:
            last.verify_directly_issued_by(self._root)
        except (InvalidSignature, TypeError, ValueError) as exc:
            raise VerificationError("x5c chain does not lead to the App Store root") from exc


def load_certificate(path: Path) -> x509.Certificate:
    """Load a PEM or DER certificate from *path*."""
    data = path.read_bytes()
    if b"-----BEGIN" in data:
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _from_millis(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError) as exc:
        raise PayloadError(f"Invalid millisecond timestamp: {value!r}") from exc


def _price_to_cents(price: Any) -> int:
    # App Store prices are in milliunits of the currency.
    try:
        return int(price) // 10
    except (TypeError, ValueError) as exc:
        raise PayloadError(f"Invalid price: {price!r}") from exc


def _ledger_for(tx: dict[str, Any], status: LedgerStatus, description: str) -> LedgerOutcome | None:
    transaction_id = tx.get("transactionId")
    if not transaction_id:
        return None
    return LedgerOutcome(
        invoice_ref=f"appstore:{transaction_id}",
        entry_type=LedgerEntryType.SUBSCRIPTION,
        amount=_price_to_cents(tx["price"]) if tx.get("price") is not None else 0,
        currency=tx.get("currency"),
        status=status,
        period_start=_from_millis(tx.get("purchaseDate")),
        period_end=_from_millis(tx.get("expiresDate")),
        description=description,
    )


# ---------------------------------------------------------------------------
# Notification handlers
# ---------------------------------------------------------------------------

_Handler = Callable[[dict[str, Any], dict[str, Any], dict[str, Any], dict[str, Any]], NormalizedEvent]


def _on_subscribed(
    base: dict[str, Any],
    payload: dict[str, Any],
    tx: dict[str, Any],
    renewal: dict[str, Any],
) -> NormalizedEvent:
    product_id = tx.get("productId")
    return SubscriptionCreated(
        **base,
        original_transaction_ref=tx.get("originalTransactionId"),
        status=map_provider_status(ProviderKind.APP_STORE, 1),
        tier=map_product_id_to_tier(product_id),
        plan_ref=product_id,
        period_start=_from_millis(tx.get("purchaseDate")),
        period_end=_from_millis(tx.get("expiresDate")),
        auto_renew=renewal.get("autoRenewStatus", 1) == 1,
        is_trial=tx.get("offerType") == 1,
    )


def _on_did_renew(
    base: dict[str, Any],
    payload: dict[str, Any],
    tx: dict[str, Any],
    renewal: dict[str, Any],
) -> NormalizedEvent:
    product_id = tx.get("productId")
    return RenewalSucceeded(
        **base,
        transaction_ref=tx.get("transactionId"),
        tier=map_product_id_to_tier(product_id),
        plan_ref=product_id,
        period_start=_from_millis(tx.get("purchaseDate")),
        period_end=_from_millis(tx.get("expiresDate")),
        ledger=_ledger_for(tx, LedgerStatus.PAID, f"App Store renewal {product_id}"),
    )


def _on_renewal_status(
    base: dict[str, Any],
    payload: dict[str, Any],
    tx: dict[str, Any],
    renewal: dict[str, Any],
) -> NormalizedEvent:
    if "autoRenewStatus" in renewal:
        auto_renew = renewal["autoRenewStatus"] == 1
    else:
        auto_renew = payload.get("subtype") == "AUTO_RENEW_ENABLED"
    return AutoRenewChanged(**base, auto_renew=auto_renew)


def _on_expired(
    base: dict[str, Any],
    payload: dict[str, Any],
    tx: dict[str, Any],
    renewal: dict[str, Any],
) -> NormalizedEvent:
    return SubscriptionExpired(**base)


def _on_failed_renewal(
    base: dict[str, Any],
    payload: dict[str, Any],
    tx: dict[str, Any],
    renewal: dict[str, Any],
) -> NormalizedEvent:
    return RenewalFailed(**base, reason=payload.get("subtype") or "billing issue")


def _on_refund(
    base: dict[str, Any],
    payload: dict[str, Any],
    tx: dict[str, Any],
    renewal: dict[str, Any],
) -> NormalizedEvent:
    return Refunded(
        **base,
        transaction_ref=tx.get("transactionId"),
        ledger=_ledger_for(tx, LedgerStatus.REFUNDED, f"App Store refund {tx.get('productId')}"),
    )


_APP_STORE_HANDLERS: dict[str, _Handler] = {
    "SUBSCRIBED": _on_subscribed,
    "DID_RENEW": _on_did_renew,
    "DID_CHANGE_RENEWAL_STATUS": _on_renewal_status,
    "EXPIRED": _on_expired,
    "GRACE_PERIOD_EXPIRED": _on_expired,
    "DID_FAIL_TO_RENEW": _on_failed_renewal,
    "REFUND": _on_refund,
    "REVOKE": _on_refund,
}


def normalize_app_store_notification(
    payload: dict[str, Any],
    verifier: AppStoreJWSVerifier,
    *,
    bundle_id: str | None = None,
) -> NormalizedEvent:
    """Convert a verified notification payload into a normalized event.

    Parameters
    ----------
    payload:
        Claims of the outer ``signedPayload``.
    verifier:
        Used to verify the nested transaction and renewal tokens.
    bundle_id:
        When set, notifications for any other app come back as
        :class:`Informational` without their nested tokens being verified.

    Raises
    ------
    VerificationError
        If a nested token fails verification.
    PayloadError
        If required fields are missing or malformed.
    """
    notification_id = payload.get("notificationUUID")
    notification_type = payload.get("notificationType")
    if not notification_id or not notification_type:
        raise PayloadError("Notification is missing notificationUUID or notificationType")

    data = payload.get("data") or {}
    occurred_at = _from_millis(payload.get("signedDate")) or datetime.now(UTC)
    if bundle_id and data.get("bundleId") and data["bundleId"] != bundle_id:
        # Authentic but addressed to another app; acknowledged so Apple stops retrying.
        logger.warning(
            "Ignoring %s notification %s for bundle %r", notification_type, notification_id, data["bundleId"]
        )
        return Informational(
            provider=ProviderKind.APP_STORE,
            event_ref=notification_id,
            occurred_at=occurred_at,
            event_type=notification_type,
            note=f"bundle {data['bundleId']}",
        )

    tx = verifier.verify(data["signedTransactionInfo"]) if data.get("signedTransactionInfo") else {}
    renewal = verifier.verify(data["signedRenewalInfo"]) if data.get("signedRenewalInfo") else {}

    base = {
        "provider": ProviderKind.APP_STORE,
        "event_ref": notification_id,
        "occurred_at": occurred_at,
        "owner_ref": tx.get("originalTransactionId") or renewal.get("originalTransactionId"),
    }

    handler = _APP_STORE_HANDLERS.get(notification_type)
    if handler is None:
        logger.info("App Store notification %s has no canonical effect", notification_type)
        return Informational(**base, event_type=notification_type, note=payload.get("subtype"))
    if base["owner_ref"] is None:
        raise PayloadError(f"{notification_type} notification has no originalTransactionId")
    try:
        return handler(base, payload, tx, renewal)
    except ValidationError as exc:
        raise PayloadError(f"Malformed {notification_type} notification: {exc.error_count()} invalid field(s)") from exc


# ---------------------------------------------------------------------------
# verifyReceipt responses
# ---------------------------------------------------------------------------


def receipt_status_code(info: dict[str, Any], now: datetime) -> str:
    """Derive an App Store status code from a ``latest_receipt_info`` entry."""
    if str(info.get("is_in_billing_retry_period", "")).lower() in ("1", "true"):
        return "3"
    expires = _from_millis(info.get("expires_date_ms"))
    if expires is not None and expires > now:
        return "1"
    return "2"


def normalize_receipt(info: dict[str, Any], *, now: datetime | None = None) -> SubscriptionCreated:
    """Turn the newest ``latest_receipt_info`` entry into a subscription event.

    Raises
    ------
    PayloadError
        If the entry lacks a transaction id or original transaction id.
    """
    now = now or datetime.now(UTC)
    transaction_id = info.get("transaction_id")
    original = info.get("original_transaction_id")
    if not transaction_id or not original:
        raise PayloadError("Receipt is missing transaction identifiers")
    product_id = info.get("product_id")
    try:
        return SubscriptionCreated(
            provider=ProviderKind.APP_STORE,
            event_ref=f"receipt:{transaction_id}",
            occurred_at=now,
            owner_ref=original,
            original_transaction_ref=original,
            status=map_provider_status(ProviderKind.APP_STORE, receipt_status_code(info, now)),
            tier=map_product_id_to_tier(product_id),
            plan_ref=product_id,
            period_start=_from_millis(info.get("purchase_date_ms")),
            period_end=_from_millis(info.get("expires_date_ms")),
            auto_renew=str(info.get("auto_renew_status", "1")) != "0",
            is_trial=str(info.get("is_trial_period", "")).lower() == "true",
        )
    except ValidationError as exc:
        raise PayloadError("Malformed receipt info") from exc
