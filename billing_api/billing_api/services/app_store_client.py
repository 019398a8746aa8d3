"""App Store ``verifyReceipt`` client.

Production receipts are verified against the production endpoint first; a
``21007`` status means the receipt came from the sandbox and the request is
repeated there, as Apple recommends.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from billing_core.config import APP_STORE_SANDBOX_URL, BillingSettings
from billing_core.errors import ProviderRejectedError, TransientProviderError

logger = logging.getLogger(__name__)

SANDBOX_RECEIPT_STATUS = 21007

# Apple asks callers to retry these later.
_RETRYABLE_STATUSES = frozenset({21005, 21009})
_RETRYABLE_RANGE = range(21100, 21200)


class AppStoreClient:
    """Verifies App Store receipts.

    Parameters
    ----------
    settings:
        Billing settings (environment, shared secret, timeout).
    http_client:
        Optional pre-built client; one is created and owned otherwise.
    """

    def __init__(
        self,
        settings: BillingSettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.provider_timeout))

    async def verify_receipt(self, receipt_data: str) -> dict[str, Any]:
        """Return Apple's decoded verification response.

        Raises
        ------
        ProviderRejectedError
            If Apple reports a non-zero status.
        TransientProviderError
            On timeouts, network failures or a retryable Apple status.
        """
        body = {
            "receipt-data": receipt_data,
            "password": self._settings.apple_shared_secret.get_secret_value(),
            "exclude-old-transactions": True,
        }
        result = await self._post(self._settings.app_store_verify_url, body)
        if result.get("status") == SANDBOX_RECEIPT_STATUS:
            logger.info("Sandbox receipt sent to production; retrying against sandbox")
            result = await self._post(APP_STORE_SANDBOX_URL, body)

        status = result.get("status")
        if status == 0:
            return result
        if status in _RETRYABLE_STATUSES or status in _RETRYABLE_RANGE or result.get("is-retryable"):
            raise TransientProviderError(f"App Store verification temporarily unavailable (status {status})")
        logger.info("App Store rejected receipt with status %s", status)
        raise ProviderRejectedError(f"Apple verification failed with status: {status}")

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("App Store verification timed out (%s)", url)
            raise TransientProviderError("App Store verification timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("App Store verification failed: %s", exc)
            raise TransientProviderError("App Store verification unavailable") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientProviderError("App Store returned an unreadable response") from exc
        if not isinstance(data, dict):
            raise TransientProviderError("App Store returned an unexpected response")
        return data

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
