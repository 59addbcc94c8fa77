"""
Stripe gateway.

The SDK is blocking, so each call runs in a worker thread and is bounded by
``timeout`` seconds; anything that goes wrong surfaces as
``ExternalServiceError``.
"""
from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Optional

import stripe

from config import settings
from errors import ExternalServiceError, SignatureVerificationError

logger = logging.getLogger(__name__)


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str = "", timeout: float = 10.0, currency: str = "usd"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.currency = currency

    async def _call(self, what: str, fn, *args, **kwargs):
        if not self.secret_key:
            raise ExternalServiceError("Stripe is not configured.")
        kwargs["api_key"] = self.secret_key
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Stripe %s timed out after %ss", what, self.timeout)
            raise ExternalServiceError(f"Payment processor timed out ({what}).") from e
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", what, e)
            raise ExternalServiceError(f"Payment processor error ({what}).") from e

    async def upsert_customer(self, email: str, name: str, address: Optional[dict[str, Any]] = None) -> str:
        """Find the customer for ``email`` (or create one) so checkout is pre-filled."""
        fields: dict[str, Any] = {"name": name}
        if address:
            fields["shipping"] = {"name": name, "address": address}
        existing = await self._call("customer lookup", stripe.Customer.list, email=email, limit=1)
        if existing.data:
            customer = await self._call("customer update", stripe.Customer.modify, existing.data[0].id, **fields)
        else:
            customer = await self._call("customer create", stripe.Customer.create, email=email, **fields)
        return customer.id

    async def create_checkout_session(
        self,
        line_items: list[dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_id: Optional[str] = None,
        discount_cents: int = 0,
        discount_label: str = "Discount",
        allowed_countries: Optional[list[str]] = None,
    ) -> dict[str, Optional[str]]:
        params: dict[str, Any] = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if customer_id:
            params["customer"] = customer_id
        if allowed_countries:
            params["shipping_address_collection"] = {"allowed_countries": allowed_countries}
        if discount_cents > 0:
            # Stripe rejects negative line items; a one-off coupon carries the discount instead
            coupon = await self._call(
                "coupon create", stripe.Coupon.create,
                amount_off=discount_cents, currency=self.currency, duration="once", name=discount_label[:40],
            )
            params["discounts"] = [{"coupon": coupon.id}]
        session = await self._call("checkout session", stripe.checkout.Session.create, **params)
        if not session.url:
            raise ExternalServiceError("Failed to create checkout session")
        return {"id": session.id, "url": session.url}

    def parse_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        if not self.webhook_secret:
            raise ExternalServiceError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise SignatureVerificationError("Missing stripe-signature header.")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError("Invalid webhook signature.") from e
        except ValueError as e:
            raise SignatureVerificationError("Invalid webhook payload.") from e
        return json.loads(payload)


def get_gateway() -> StripeGateway:
    return StripeGateway(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
        currency=settings.CURRENCY,
    )
