"""Tests for the payment endpoints.

Covers:
- GET/POST /api/v1/payments/methods
- DELETE /api/v1/payments/methods/{id}
- PUT /api/v1/payments/methods/{id}/default
- GET /api/v1/payments/history (pagination, bounds)
- POST /api/v1/payments/app-store/receipt
- POST /api/v1/payments/app-store/consumable
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from billing_core.errors import ProviderRejectedError
from billing_core.ledger import BillingLedger
from billing_core.models.enums import LedgerStatus, ProviderKind
from billing_core.models.events import LedgerOutcome
from billing_core.state.database import session_scope

BASE = "/api/v1/payments"


def _ms(value: datetime) -> str:
    return str(int(value.timestamp() * 1000))


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------


class TestPaymentMethods:
    @pytest.mark.asyncio
    async def test_attach_requires_customer(self, client, mock_stripe) -> None:
        resp = await client.post(f"{BASE}/methods", json={"payment_method_id": "pm_card"})

        assert resp.status_code == 404
        assert resp.json()["detail"] == "No billing customer for this user"
        mock_stripe.attach_payment_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_attach_and_list(self, client, mock_stripe) -> None:
        await client.post("/api/v1/subscriptions/customer", json={})

        resp = await client.post(f"{BASE}/methods", json={"payment_method_id": "pm_card"})

        assert resp.status_code == 201
        assert resp.json() == {
            "id": "pm_card",
            "brand": "visa",
            "last4": "4242",
            "exp_month": 12,
            "exp_year": 2030,
            "is_default": False,
        }
        mock_stripe.attach_payment_method.assert_awaited_once_with("pm_card", "cus_test")

        listed = (await client.get(f"{BASE}/methods")).json()
        assert [m["id"] for m in listed["payment_methods"]] == ["pm_card"]

    @pytest.mark.asyncio
    async def test_attach_as_default(self, client, mock_stripe) -> None:
        await client.post("/api/v1/subscriptions/customer", json={})

        resp = await client.post(f"{BASE}/methods", json={"payment_method_id": "pm_card", "set_default": True})

        assert resp.status_code == 201
        assert resp.json()["is_default"] is True
        mock_stripe.set_default_payment_method.assert_awaited_once_with("cus_test", "pm_card")

    @pytest.mark.asyncio
    async def test_set_default_on_unowned_method(self, client, mock_stripe) -> None:
        await client.post("/api/v1/subscriptions/customer", json={})

        resp = await client.put(f"{BASE}/methods/pm_someone_else/default")

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Payment method not found"
        mock_stripe.set_default_payment_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_detach(self, client, mock_stripe) -> None:
        await client.post("/api/v1/subscriptions/customer", json={})
        await client.post(f"{BASE}/methods", json={"payment_method_id": "pm_card"})

        resp = await client.delete(f"{BASE}/methods/pm_card")

        assert resp.status_code == 204
        mock_stripe.detach_payment_method.assert_awaited_once_with("pm_card")
        listed = (await client.get(f"{BASE}/methods")).json()
        assert listed["payment_methods"] == []

    @pytest.mark.asyncio
    async def test_detach_unknown_method(self, client) -> None:
        resp = await client.delete(f"{BASE}/methods/pm_missing")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_card_error_maps_to_402(self, client, mock_stripe) -> None:
        await client.post("/api/v1/subscriptions/customer", json={})
        mock_stripe.attach_payment_method.side_effect = ProviderRejectedError("Your card has expired.")

        resp = await client.post(f"{BASE}/methods", json={"payment_method_id": "pm_expired"})

        assert resp.status_code == 402
        assert resp.json()["detail"] == "Your card has expired."


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_paginated(self, client, session_factory) -> None:
        async with session_scope(session_factory) as session:
            ledger = BillingLedger(session)
            for i in range(5):
                await ledger.record_outcome(
                    "user-123",
                    f"in_{i}",
                    LedgerOutcome(invoice_ref=f"in_{i}", amount=999, currency="usd", status=LedgerStatus.PAID),
                )
            await ledger.record_outcome(
                "user-other",
                "in_other",
                LedgerOutcome(invoice_ref="in_other", amount=100, status=LedgerStatus.PAID),
            )

        page = (await client.get(f"{BASE}/history", params={"limit": 2, "offset": 1})).json()

        assert page["total"] == 5
        assert len(page["entries"]) == 2
        assert all(e["invoice_id"].startswith("in_") and e["invoice_id"] != "in_other" for e in page["entries"])

    @pytest.mark.asyncio
    async def test_empty_history(self, client) -> None:
        resp = await client.get(f"{BASE}/history")
        assert resp.status_code == 200
        assert resp.json() == {"entries": [], "total": 0}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 101])
    async def test_limit_bounds(self, client, limit: int) -> None:
        resp = await client.get(f"{BASE}/history", params={"limit": limit})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# App Store receipts
# ---------------------------------------------------------------------------


class TestReceiptValidation:
    @pytest.mark.asyncio
    async def test_valid_receipt_activates_subscription(self, client, mock_app_store) -> None:
        now = datetime.now(UTC)
        mock_app_store.verify_receipt.return_value = {
            "status": 0,
            "latest_receipt_info": [
                {
                    "transaction_id": "3000",
                    "original_transaction_id": "1000",
                    "product_id": "com.kindred.connect.monthly",
                    "purchase_date_ms": _ms(now - timedelta(days=60)),
                    "expires_date_ms": _ms(now - timedelta(days=30)),
                },
                {
                    "transaction_id": "3001",
                    "original_transaction_id": "1000",
                    "product_id": "com.kindred.community.monthly",
                    "purchase_date_ms": _ms(now - timedelta(days=1)),
                    "expires_date_ms": _ms(now + timedelta(days=29)),
                    "auto_renew_status": "1",
                },
            ],
        }

        resp = await client.post(f"{BASE}/app-store/receipt", json={"receipt_data": "base64receipt"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["provider"] == "app_store"
        assert data["status"] == "active"
        assert data["tier"] == "community"
        assert data["plan_id"] == "com.kindred.community.monthly"
        mock_app_store.verify_receipt.assert_awaited_once_with("base64receipt")

    @pytest.mark.asyncio
    async def test_receipt_without_subscription_info(self, client) -> None:
        resp = await client.post(f"{BASE}/app-store/receipt", json={"receipt_data": "base64receipt"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "No receipt info found"

    @pytest.mark.asyncio
    async def test_receipt_owned_by_another_user(self, client, mock_app_store, seed_subscription) -> None:
        now = datetime.now(UTC)
        await seed_subscription(
            "user-999",
            provider=ProviderKind.APP_STORE,
            provider_original_transaction_ref="1000",
            status="active",
            tier="connect",
        )
        mock_app_store.verify_receipt.return_value = {
            "status": 0,
            "latest_receipt_info": [
                {
                    "transaction_id": "3001",
                    "original_transaction_id": "1000",
                    "product_id": "com.kindred.connect.monthly",
                    "purchase_date_ms": _ms(now),
                    "expires_date_ms": _ms(now + timedelta(days=30)),
                }
            ],
        }

        resp = await client.post(f"{BASE}/app-store/receipt", json={"receipt_data": "stolen"})

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Receipt belongs to another account"
        current = (await client.get("/api/v1/subscriptions/current")).json()
        assert current["has_subscription"] is False

    @pytest.mark.asyncio
    async def test_apple_rejection_maps_to_402(self, client, mock_app_store) -> None:
        mock_app_store.verify_receipt.side_effect = ProviderRejectedError(
            "Apple verification failed with status: 21003"
        )
        resp = await client.post(f"{BASE}/app-store/receipt", json={"receipt_data": "bad"})
        assert resp.status_code == 402


# ---------------------------------------------------------------------------
# Consumables
# ---------------------------------------------------------------------------


class TestConsumables:
    @pytest.fixture()
    def receipt_with_boost_pack(self, mock_app_store):
        mock_app_store.verify_receipt.return_value = {
            "status": 0,
            "receipt": {"in_app": [{"transaction_id": "5001", "product_id": "com.kindred.boost.pack5"}]},
        }
        return mock_app_store

    @pytest.mark.asyncio
    async def test_purchase_credits_balance(self, client, receipt_with_boost_pack) -> None:
        resp = await client.post(
            f"{BASE}/app-store/consumable",
            json={"product_id": "com.kindred.boost.pack5", "transaction_id": "5001", "receipt_data": "r"},
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "product_id": "com.kindred.boost.pack5",
            "kind": "boost",
            "quantity": 5,
            "boosts_remaining": 5,
            "super_likes_remaining": 0,
        }
        entitlements = (await client.get("/api/v1/subscriptions/entitlements")).json()
        assert entitlements["boosts_remaining"] == 5

    @pytest.mark.asyncio
    async def test_transaction_is_credited_once(self, client, receipt_with_boost_pack) -> None:
        body = {"product_id": "com.kindred.boost.pack5", "transaction_id": "5001", "receipt_data": "r"}
        await client.post(f"{BASE}/app-store/consumable", json=body)

        resp = await client.post(f"{BASE}/app-store/consumable", json=body)

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Transaction already processed"
        assert receipt_with_boost_pack.verify_receipt.await_count == 1
        entitlements = (await client.get("/api/v1/subscriptions/entitlements")).json()
        assert entitlements["boosts_remaining"] == 5

    @pytest.mark.asyncio
    async def test_transaction_missing_from_receipt(self, client, receipt_with_boost_pack) -> None:
        resp = await client.post(
            f"{BASE}/app-store/consumable",
            json={"product_id": "com.kindred.boost.pack5", "transaction_id": "9999", "receipt_data": "r"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Transaction not found in receipt"

    @pytest.mark.asyncio
    async def test_unknown_product(self, client, mock_app_store) -> None:
        resp = await client.post(
            f"{BASE}/app-store/consumable",
            json={"product_id": "com.kindred.rewind.pack5", "transaction_id": "5002", "receipt_data": "r"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Unknown product: com.kindred.rewind.pack5"
        mock_app_store.verify_receipt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_apple_rejection(self, client, mock_app_store) -> None:
        mock_app_store.verify_receipt.side_effect = ProviderRejectedError(
            "Apple verification failed with status: 21010"
        )
        resp = await client.post(
            f"{BASE}/app-store/consumable",
            json={"product_id": "com.kindred.superlike.pack5", "transaction_id": "5003", "receipt_data": "r"},
        )
        assert resp.status_code == 402
