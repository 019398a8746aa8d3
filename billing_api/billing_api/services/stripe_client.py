"""Thin async wrapper around the Stripe SDK.

The SDK is synchronous, so each call runs in a worker thread under
``asyncio.wait_for`` with the configured provider timeout.  Stripe errors
are translated into the billing error taxonomy:

* card declines become :class:`ProviderRejectedError`
* invalid requests become :class:`InvalidRequestError`
* network failures, rate limits and timeouts become
  :class:`TransientProviderError`
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any

from billing_core.config import BillingSettings
from billing_core.errors import InvalidRequestError, ProviderRejectedError, TransientProviderError

logger = logging.getLogger(__name__)


class StripeClient:
    """Stripe operations used by user-initiated billing flows.

    Parameters
    ----------
    settings:
        Billing settings holding the secret key and provider timeout.
    """

    def __init__(self, settings: BillingSettings) -> None:
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        import stripe

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(functools.partial(fn, *args, **kwargs)),
                timeout=self._settings.provider_timeout,
            )
        except TimeoutError as exc:
            logger.warning("Stripe %s timed out after %.1fs", operation, self._settings.provider_timeout)
            raise TransientProviderError(f"Stripe {operation} timed out") from exc
        except stripe.CardError as exc:
            logger.info("Stripe %s declined: %s", operation, exc.user_message)
            raise ProviderRejectedError(exc.user_message or "Payment declined") from exc
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe %s rejected request: %s", operation, exc.user_message)
            raise InvalidRequestError(exc.user_message or "Invalid payment request") from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("Stripe %s unavailable: %s", operation, exc)
            raise TransientProviderError(f"Stripe {operation} unavailable") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc, exc_info=True)
            raise TransientProviderError(f"Stripe {operation} failed") from exc

    # ------------------------------------------------------------------
    # Customers and subscriptions
    # ------------------------------------------------------------------

    async def create_customer(self, user_id: str, email: str | None = None) -> Any:
        stripe = self._get_stripe()
        return await self._call(
            "customer creation",
            stripe.Customer.create,
            email=email,
            metadata={"kindred_user_id": user_id},
        )

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        *,
        payment_method_id: str | None = None,
        trial_days: int | None = None,
    ) -> Any:
        """Create a subscription and expand its first invoice's payment intent."""
        stripe = self._get_stripe()
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id
        if trial_days:
            params["trial_period_days"] = trial_days
        return await self._call("subscription creation", stripe.Subscription.create, **params)

    async def change_price(self, subscription_id: str, price_id: str) -> Any:
        """Swap the subscription's single item to *price_id* with proration."""
        stripe = self._get_stripe()
        current = await self._call("subscription lookup", stripe.Subscription.retrieve, subscription_id)
        items = (current.get("items") or {}).get("data") or []
        if not items:
            raise InvalidRequestError("Subscription has no items to change")
        return await self._call(
            "plan change",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": items[0]["id"], "price": price_id}],
            proration_behavior="create_prorations",
        )

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Any:
        stripe = self._get_stripe()
        return await self._call(
            "cancellation update",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel,
        )

    async def cancel_now(self, subscription_id: str) -> Any:
        stripe = self._get_stripe()
        return await self._call("cancellation", stripe.Subscription.cancel, subscription_id)

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> Any:
        stripe = self._get_stripe()
        return await self._call(
            "payment method attach",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
        )

    async def detach_payment_method(self, payment_method_id: str) -> Any:
        stripe = self._get_stripe()
        return await self._call("payment method detach", stripe.PaymentMethod.detach, payment_method_id)

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> Any:
        stripe = self._get_stripe()
        return await self._call(
            "default payment method update",
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )
