import asyncio
import hashlib
import hmac
import json
import time

import pytest

from stickershop.errors import InvalidWebhookSignature, MissingPaymentCredentials
from stickershop.webhooks import extract_shipping

from conftest import FakeMailer

SECRET = "whsec_test"


def sign(payload: str, secret: str = SECRET, timestamp=None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event(event_id: str, event_type: str, obj: dict) -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


def deliver(ctx, payload: str, signature=None):
    return asyncio.run(ctx.webhooks.handle(payload.encode("utf-8"), signature or sign(payload)))


def subscription_checkout(email="new@example.com", subscription="sub_1"):
    return {
        "id": "cs_sub",
        "mode": "subscription",
        "customer": "cus_1",
        "customer_email": email,
        "subscription": subscription,
    }


def sticker_checkout(image_url="https://replicate.delivery/out.webp", shipping_country="Canada"):
    return {
        "id": "cs_pay",
        "mode": "payment",
        "customer_email": "buyer@example.com",
        "customer_details": {"email": "buyer@example.com", "phone": "+1 902 555 0100"},
        "shipping_details": {
            "name": "Jane Sailor",
            "address": {"line1": "1 Harbour St", "city": "Halifax", "state": "NS",
                        "postal_code": "B3H 1A1", "country": shipping_country},
        },
        "metadata": {"imageUrl": image_url, "buyerName": "Jane", "buyerAddress": "{}"},
    }


# -----------------------------
# Signatures
# -----------------------------

def test_bad_signature_is_rejected_without_processing(ctx, db):
    payload = event("evt_1", "checkout.session.completed", subscription_checkout())

    with pytest.raises(InvalidWebhookSignature):
        deliver(ctx, payload, sign(payload, secret="whsec_wrong"))
    with pytest.raises(InvalidWebhookSignature):
        deliver(ctx, payload, "garbage")

    assert db.users == {}
    assert db.subscriptions == {}


def test_stale_signature_is_rejected(ctx):
    payload = event("evt_1", "checkout.session.completed", subscription_checkout())

    with pytest.raises(InvalidWebhookSignature):
        deliver(ctx, payload, sign(payload, timestamp=int(time.time()) - 3600))


def test_missing_signature_is_rejected(ctx):
    with pytest.raises(InvalidWebhookSignature):
        asyncio.run(ctx.webhooks.handle(b"{}", None))


def test_unconfigured_secret(ctx):
    ctx.settings.stripe_webhook_secret = ""
    payload = event("evt_1", "ping", {})

    with pytest.raises(MissingPaymentCredentials):
        deliver(ctx, payload, "t=1,v1=abc")


def test_unhandled_event_types_are_acknowledged(ctx):
    assert deliver(ctx, event("evt_1", "invoice.paid", {"id": "in_1"})) == {"received": True}


# -----------------------------
# Subscriptions
# -----------------------------

def test_subscription_checkout_creates_user_and_pro_subscription(ctx, db):
    result = deliver(ctx, event("evt_1", "checkout.session.completed", subscription_checkout("New@Example.com")))

    assert result == {"received": True}
    assert [u["email"] for u in db.users.values()] == ["new@example.com"]
    row = db.subscriptions["sub_1"]
    assert row["plan"] == "pro"
    assert row["status"] == "active"
    assert row["stripe_customer_id"] == "cus_1"

    user_id = next(iter(db.users))
    assert asyncio.run(ctx.entitlements.get_plan(user_id)) == "pro"


def test_redelivered_subscription_checkout_is_idempotent(ctx, db):
    payload = event("evt_1", "checkout.session.completed", subscription_checkout())

    deliver(ctx, payload)
    deliver(ctx, payload)

    assert len(db.users) == 1
    assert len(db.subscriptions) == 1


def test_subscription_update_copies_status_and_period_end(ctx, db):
    deliver(ctx, event("evt_1", "checkout.session.completed", subscription_checkout()))
    deliver(ctx, event("evt_2", "customer.subscription.updated", {
        "id": "sub_1",
        "status": "past_due",
        "items": {"data": [{"current_period_end": 1893456000}]},
    }))

    row = db.subscriptions["sub_1"]
    assert row["status"] == "past_due"
    assert row["current_period_end"].year == 2030


def test_update_for_unknown_subscription_is_a_no_op(ctx, db):
    result = deliver(ctx, event("evt_1", "customer.subscription.updated", {"id": "sub_missing", "status": "active"}))

    assert result == {"received": True}
    assert db.subscriptions == {}


def test_deleted_subscription_is_canceled(ctx, db):
    deliver(ctx, event("evt_1", "checkout.session.completed", subscription_checkout()))
    deliver(ctx, event("evt_2", "customer.subscription.deleted", {"id": "sub_1", "status": "canceled"}))

    assert db.subscriptions["sub_1"]["status"] == "canceled"
    user_id = next(iter(db.users))
    assert asyncio.run(ctx.entitlements.get_plan(user_id)) == "free"


def test_replayed_checkout_does_not_revive_canceled_subscription(ctx, db):
    checkout = event("evt_1", "checkout.session.completed", subscription_checkout())

    deliver(ctx, checkout)
    deliver(ctx, event("evt_2", "customer.subscription.deleted", {"id": "sub_1", "status": "canceled"}))
    deliver(ctx, checkout)

    assert db.subscriptions["sub_1"]["status"] == "canceled"
    user_id = next(iter(db.users))
    assert asyncio.run(ctx.entitlements.get_plan(user_id)) == "free"


def test_late_checkout_keeps_past_due_status(ctx, db):
    deliver(ctx, event("evt_1", "checkout.session.completed", subscription_checkout()))
    deliver(ctx, event("evt_2", "customer.subscription.updated", {"id": "sub_1", "status": "past_due"}))
    deliver(ctx, event("evt_3", "checkout.session.completed", subscription_checkout()))

    assert db.subscriptions["sub_1"]["status"] == "past_due"


def test_subscription_checkout_without_email_uses_metadata_user(ctx, db):
    user = asyncio.run(db.upsert_user("member@example.com"))
    session = subscription_checkout(email=None)
    session["metadata"] = {"user_id": str(user["id"])}

    deliver(ctx, event("evt_1", "checkout.session.completed", session))

    assert db.subscriptions["sub_1"]["user_id"] == user["id"]
    assert asyncio.run(ctx.entitlements.get_plan(user["id"])) == "pro"


def test_subscription_checkout_without_any_user_is_skipped(ctx, db):
    result = deliver(ctx, event("evt_1", "checkout.session.completed", subscription_checkout(email=None)))

    assert result == {"received": True}
    assert db.subscriptions == {}


def test_expanded_subscription_sets_period_end(ctx, db):
    session = subscription_checkout(subscription={
        "id": "sub_1",
        "items": {"data": [{"current_period_end": 1893456000}]},
    })

    deliver(ctx, event("evt_1", "checkout.session.completed", session))

    row = db.subscriptions["sub_1"]
    assert row["status"] == "active"
    assert row["current_period_end"].year == 2030


# -----------------------------
# Sticker orders
# -----------------------------

def test_sticker_purchase_submits_order_and_notifies_operator(ctx, upstreams, mailer):
    result = deliver(ctx, event("evt_pay_1", "checkout.session.completed", sticker_checkout()))

    assert result == {"received": True}
    assert upstreams.catalog_requests == ["CA"]
    order = upstreams.order_requests[0]
    assert order["SourceId"] == "evt_pay_1"
    assert order["ShipToAddress"]["CountryCode"] == "CA"
    assert order["ShipToAddress"]["FirstName"] == "Jane"
    assert order["ShipToAddress"]["Phone"] == "+1 902 555 0100"
    assert order["Items"][0]["SKU"] == "STK-3x3-1-WHITE-CA"

    assert len(mailer.sent) == 1
    assert mailer.sent[0]["to"] == "ops@example.com"
    assert "Jane Sailor" in mailer.sent[0]["subject"]
    assert "submitted" in mailer.sent[0]["html"]


def test_redelivered_purchase_is_one_order(ctx, upstreams):
    payload = event("evt_pay_1", "checkout.session.completed", sticker_checkout())

    deliver(ctx, payload)
    deliver(ctx, payload)

    assert len(upstreams.orders) == 1


def test_missing_artwork_is_reported_not_raised(ctx, upstreams, mailer):
    result = deliver(ctx, event("evt_pay_2", "checkout.session.completed", sticker_checkout(image_url="")))

    assert result == {"received": True}
    assert len(upstreams.order_requests) == 1
    assert upstreams.orders == {}
    assert "FAILED" in mailer.sent[0]["html"]
    assert "fulfillment_rejected" in mailer.sent[0]["html"]


def test_catalog_outage_still_notifies_operator(ctx, upstreams, mailer):
    upstreams.catalog_status = 500

    result = deliver(ctx, event("evt_pay_3", "checkout.session.completed", sticker_checkout()))

    assert result == {"received": True}
    assert upstreams.order_requests == []
    assert "catalog_fetch_failed" in mailer.sent[0]["html"]


def test_email_failure_does_not_block_acknowledgement(ctx, upstreams):
    ctx.webhooks.mailer = FakeMailer(succeed=False)

    result = deliver(ctx, event("evt_pay_4", "checkout.session.completed", sticker_checkout()))

    assert result == {"received": True}
    assert len(upstreams.orders) == 1


def test_shipping_falls_back_to_checkout_metadata():
    session = {
        "metadata": {
            "buyerName": "Sam Buyer",
            "buyerAddress": json.dumps({"line1": "5 Main St", "city": "Austin", "country": "United States"}),
        },
    }
    shipping = extract_shipping(session)

    assert shipping["name"] == "Sam Buyer"
    assert shipping["address"]["city"] == "Austin"


def test_shipping_reads_collected_information():
    session = {
        "collected_information": {"shipping_details": {"name": "Kit", "address": {"country": "CA"}}},
        "metadata": {"buyerName": "Other"},
    }
    assert extract_shipping(session) == {"name": "Kit", "address": {"country": "CA"}}


def test_malformed_metadata_address_is_ignored():
    shipping = extract_shipping({"metadata": {"buyerAddress": "{not json"}})
    assert shipping == {"name": "Customer", "address": {}}
