"""Stripe checkout sessions and webhook signature checks.

The Stripe SDK is synchronous, so every network call goes through
``asyncio.to_thread``. The API key is passed per call rather than set on the
module so tests and multiple settings objects don't interfere.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Union

import stripe

from stickershop.auth import CurrentUser
from stickershop.config import Settings
from stickershop.errors import (
    InvalidWebhookSignature,
    MissingCheckoutFields,
    MissingPaymentCredentials,
    PaymentProviderError,
)

logger = logging.getLogger(__name__)

STICKER_PRODUCT_NAME = "Custom Sticker"

# Seconds a signed webhook timestamp stays valid
WEBHOOK_TOLERANCE = 300


class BillingService:
    """
    Creates checkout sessions and verifies incoming webhooks.

    Usage:
        billing = BillingService(settings)
        session = await billing.create_sticker_checkout(email, url, name, address)
        event = billing.verify_webhook(raw_body, request.headers["stripe-signature"])
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _require_key(self) -> str:
        if not self.settings.stripe_secret_key:
            raise MissingPaymentCredentials("STRIPE_SECRET_KEY not configured")
        return self.settings.stripe_secret_key

    async def _create_session(self, **params: Any) -> Dict[str, Any]:
        api_key = self._require_key()
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe error creating %s checkout session: %s", params.get("mode"), str(e))
            raise PaymentProviderError(f"Failed to create checkout session: {e.user_message or str(e)}") from None

        logger.info("Created %s checkout session %s", params.get("mode"), session.id)
        return {"id": session.id, "url": session.url}

    # -----------------------------
    # Checkout
    # -----------------------------

    async def create_sticker_checkout(
        self,
        email: Optional[str],
        artwork_url: Optional[str],
        name: Optional[str],
        address: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """One-time payment for a single printed sticker.

        Artwork URL, name and address ride along in metadata so the webhook
        can build the print order after payment.
        """
        if not email or not artwork_url or not name or not address:
            raise MissingCheckoutFields("Missing required fields")

        base_url = self.settings.public_base_url
        return await self._create_session(
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": self.settings.sticker_currency,
                        "product_data": {
                            "name": STICKER_PRODUCT_NAME,
                            "images": [artwork_url],
                        },
                        "unit_amount": self.settings.sticker_price_cents,
                    },
                    "quantity": 1,
                }
            ],
            customer_email=email,
            shipping_address_collection={"allowed_countries": list(self.settings.shipping_countries)},
            metadata={
                "imageUrl": artwork_url,
                "buyerName": name,
                "buyerAddress": json.dumps(address),
            },
            success_url=f"{base_url}/thank-you.html",
            cancel_url=f"{base_url}/",
        )

    async def create_subscription_checkout(self, user: CurrentUser) -> Dict[str, Any]:
        """Subscription checkout for the pro plan."""
        if not self.settings.stripe_price_id_pro:
            raise MissingPaymentCredentials("STRIPE_PRICE_ID_PRO not configured")

        base_url = self.settings.public_base_url
        metadata = {"user_id": str(user.id), "user_email": user.email}
        return await self._create_session(
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": self.settings.stripe_price_id_pro, "quantity": 1}],
            customer_email=user.email,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=f"{base_url}/?upgraded=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/?canceled=true",
        )

    # -----------------------------
    # Webhooks
    # -----------------------------

    def verify_webhook(self, payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header and decode the event.

        Nothing in the payload is trusted or parsed before the signature
        checks out.

        Raises:
            MissingPaymentCredentials: no webhook secret configured
            InvalidWebhookSignature: missing, malformed, stale or wrong signature
        """
        if not self.settings.stripe_webhook_secret:
            raise MissingPaymentCredentials("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise InvalidWebhookSignature("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError:
            raise InvalidWebhookSignature("Webhook payload is not valid UTF-8") from None
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.settings.stripe_webhook_secret, WEBHOOK_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", str(e))
            raise InvalidWebhookSignature() from None

        try:
            event = json.loads(body)
        except ValueError:
            raise InvalidWebhookSignature("Webhook payload is not valid JSON") from None
        if not isinstance(event, dict):
            raise InvalidWebhookSignature("Webhook payload is not an event object")
        return event
