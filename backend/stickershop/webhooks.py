"""Stripe webhook handling.

Event routing:

- checkout.session.completed (mode=subscription)
    find/create the user by email (or the checkout user id), insert the
    subscription as pro/active; an existing row keeps its status
- checkout.session.completed (mode=payment)
    submit the print order, then email the operator with the outcome
- customer.subscription.created / customer.subscription.updated
    copy status and period end onto the matching row (no row: no-op)
- customer.subscription.deleted
    mark the matching row canceled

The signature is verified before anything else. After that, every step runs
in its own error boundary: a failing step is logged and the event is still
acknowledged, because Stripe has already moved the money and retrying the
whole event would not undo that.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from stickershop.auth import normalize_email
from stickershop.billing import BillingService
from stickershop.database import Database
from stickershop.entitlements import PRO
from stickershop.errors import PipelineError
from stickershop.fulfillment import FulfillmentSubmitter
from stickershop.mailer import Mailer, render_order_notification

logger = logging.getLogger(__name__)

Handler = Callable[[str, Dict[str, Any]], Awaitable[None]]


def _epoch_to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    """current_period_end lives on the subscription in older API versions, on its items in newer ones."""
    found = _epoch_to_datetime(subscription.get("current_period_end"))
    if found:
        return found
    items = (subscription.get("items") or {}).get("data") or []
    for item in items:
        if isinstance(item, dict):
            found = _epoch_to_datetime(item.get("current_period_end"))
            if found:
                return found
    return None


def extract_shipping(session: Dict[str, Any]) -> Dict[str, Any]:
    """Shipping name/address from the session, falling back to checkout metadata.

    Returns a dict with ``name`` and ``address`` (possibly empty).
    """
    shipping = session.get("shipping_details") or (
        (session.get("collected_information") or {}).get("shipping_details")
    ) or {}
    metadata = session.get("metadata") or {}

    address = shipping.get("address") or {}
    if not address:
        try:
            parsed = json.loads(metadata.get("buyerAddress") or "{}")
        except ValueError:
            parsed = {}
        address = parsed if isinstance(parsed, dict) else {}

    address = dict(address)
    phone = (session.get("customer_details") or {}).get("phone")
    if phone and not address.get("phone"):
        address["phone"] = phone

    return {
        "name": shipping.get("name") or metadata.get("buyerName") or "Customer",
        "address": address,
    }


def _session_email(session: Dict[str, Any]) -> str:
    details = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    return session.get("customer_email") or details.get("email") or metadata.get("user_email") or ""


class PaymentWebhookRouter:
    """Verify, route and apply Stripe events."""

    def __init__(
        self,
        billing: BillingService,
        db: Database,
        fulfillment: FulfillmentSubmitter,
        mailer: Mailer,
        operator_email: str,
    ):
        self.billing = billing
        self.db = db
        self.fulfillment = fulfillment
        self.mailer = mailer
        self.operator_email = operator_email

        self._handlers: Dict[str, Handler] = {
            "checkout.session.completed": self.on_checkout_completed,
            "customer.subscription.created": self.on_subscription_changed,
            "customer.subscription.updated": self.on_subscription_changed,
            "customer.subscription.deleted": self.on_subscription_deleted,
        }

    async def handle(self, payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        """
        Process one webhook delivery.

        Raises:
            InvalidWebhookSignature: before any processing happens

        Returns:
            ``{"received": True}`` for every correctly signed event
        """
        event = self.billing.verify_webhook(payload, signature)

        event_id = str(event.get("id") or "")
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring webhook event %s (%s)", event_id, event_type)
        else:
            logger.info("Processing webhook event %s (%s)", event_id, event_type)
            await self._run_step(f"{event_type} {event_id}", handler(event_id, obj))

        return {"received": True}

    async def _run_step(self, label: str, step: Awaitable[Any]) -> bool:
        try:
            await step
            return True
        except PipelineError as e:
            logger.error("Webhook step %s failed: %s (%s)", label, e.message, e.code)
        except Exception:
            logger.exception("Webhook step %s failed unexpectedly", label)
        return False

    # -----------------------------
    # Checkout
    # -----------------------------

    async def on_checkout_completed(self, event_id: str, session: Dict[str, Any]) -> None:
        mode = session.get("mode")
        if mode == "subscription":
            await self.activate_subscription(session)
        elif mode == "payment":
            await self.fulfill_sticker_order(event_id, session)
        else:
            logger.warning("Checkout session %s has unknown mode %r", session.get("id"), mode)

    async def activate_subscription(self, session: Dict[str, Any]) -> None:
        subscription = session.get("subscription")
        period_end = None
        if isinstance(subscription, dict):
            period_end = _period_end(subscription)
            subscription_id = subscription.get("id")
        else:
            subscription_id = subscription
        if not subscription_id:
            logger.error("Subscription checkout %s has no subscription id", session.get("id"))
            return

        user = await self._checkout_user(session)
        if user is None:
            logger.error("Subscription checkout %s has no email or known user id", session.get("id"))
            return

        customer = session.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        row = await self.db.upsert_subscription(
            user_id=user["id"],
            stripe_subscription_id=str(subscription_id),
            stripe_customer_id=customer,
            plan=PRO,
            status="active",
            current_period_end=period_end,
        )
        if row["status"] == "active":
            logger.info("User %s upgraded to pro (subscription %s)", user["id"], subscription_id)
        else:
            logger.info("Subscription %s already %s, leaving it as is", subscription_id, row["status"])

    async def _checkout_user(self, session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """The paying user: by checkout email, else by the user id stored at checkout creation."""
        email = _session_email(session)
        if email:
            return await self.db.upsert_user(normalize_email(email))

        user_id = str((session.get("metadata") or {}).get("user_id") or "")
        if not user_id.isdigit():
            return None
        return await self.db.get_user(int(user_id))

    async def fulfill_sticker_order(self, event_id: str, session: Dict[str, Any]) -> None:
        """Submit the print order, then always notify the operator."""
        metadata = session.get("metadata") or {}
        artwork_url = metadata.get("imageUrl") or ""
        buyer_email = _session_email(session) or "unknown"
        shipping = extract_shipping(session)

        fulfillment_ok = False
        try:
            confirmation = await self.fulfillment.submit_order(
                artwork_url=artwork_url,
                buyer_email=buyer_email,
                buyer_name=shipping["name"],
                address=shipping["address"],
                idempotency_key=event_id or str(session.get("id") or ""),
            )
            fulfillment_ok = True
            detail = f"order {confirmation.order_id or 'n/a'}, SKU {confirmation.sku}, {confirmation.country_code}"
        except PipelineError as e:
            logger.error("Fulfillment failed for event %s: %s (%s)", event_id, e.message, e.code)
            detail = f"{e.code}: {e.message}"
            if e.extra:
                detail += f"\n{json.dumps(e.extra, default=str)}"
        except Exception as e:
            logger.exception("Fulfillment crashed for event %s", event_id)
            detail = f"{type(e).__name__}: {e}"

        await self._run_step(
            f"order notification {event_id}",
            self.notify_operator(buyer_email, shipping, artwork_url, fulfillment_ok, detail),
        )

    async def notify_operator(
        self,
        buyer_email: str,
        shipping: Dict[str, Any],
        artwork_url: str,
        fulfillment_ok: bool,
        detail: str,
    ) -> None:
        sent = await self.mailer.send(
            to=self.operator_email,
            subject=f"New Sticker Order from {shipping['name']}",
            html=render_order_notification(
                buyer_name=shipping["name"],
                buyer_email=buyer_email,
                address=shipping["address"],
                artwork_url=artwork_url,
                fulfillment_ok=fulfillment_ok,
                fulfillment_detail=detail,
            ),
        )
        if not sent:
            logger.error("Operator notification was not delivered (fulfillment_ok=%s)", fulfillment_ok)

    # -----------------------------
    # Subscription lifecycle
    # -----------------------------

    async def on_subscription_changed(self, event_id: str, subscription: Dict[str, Any]) -> None:
        subscription_id = subscription.get("id")
        status = subscription.get("status")
        if not subscription_id or not status:
            logger.warning("Subscription event %s without id/status", event_id)
            return

        row = await self.db.update_subscription_status(str(subscription_id), status, _period_end(subscription))
        if row is None:
            logger.info("No subscription row for %s yet, ignoring event %s", subscription_id, event_id)
        else:
            logger.info("Subscription %s is now %s", subscription_id, status)

    async def on_subscription_deleted(self, event_id: str, subscription: Dict[str, Any]) -> None:
        subscription_id = subscription.get("id")
        if not subscription_id:
            return
        row = await self.db.update_subscription_status(str(subscription_id), "canceled")
        if row is None:
            logger.info("No subscription row for %s, ignoring event %s", subscription_id, event_id)
        else:
            logger.info("Subscription %s canceled", subscription_id)
