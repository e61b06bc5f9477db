"""Tests for the Stripe gateway adapter (SDK calls mocked, real signature checks)."""
import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
import stripe

from cryptowatch.features.billing.provider import BillingProviderError, BillingWebhookError
from cryptowatch.features.billing.stripe_provider import (
    StripeProvider,
    invoice_period,
    invoice_subscription_id,
    invoice_subscription_metadata,
    parse_subscription,
)
from cryptowatch.features.plans.catalog import get_plan

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = timestamp or int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture
def provider():
    return StripeProvider(
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        success_url="http://localhost:3000/app/subscription?success=true",
        cancel_url="http://localhost:3000/app/subscription?canceled=true",
    )


def test_requires_secret_key():
    with pytest.raises(BillingProviderError):
        StripeProvider(secret_key=None)


def test_construct_event_with_valid_signature(provider):
    payload = json.dumps({
        "id": "evt_1",
        "type": "invoice.payment_succeeded",
        "created": 1767225600,
        "data": {"object": {"id": "in_1", "subscription": "sub_1"}},
    })

    event = provider.construct_event(payload.encode("utf-8"), sign(payload))

    assert event.event_id == "evt_1"
    assert event.event_type == "invoice.payment_succeeded"
    assert event.gateway == "stripe"
    assert event.created.timestamp() == 1767225600
    assert event.data["subscription"] == "sub_1"


def test_construct_event_rejects_bad_signature(provider):
    payload = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {}}})
    with pytest.raises(BillingWebhookError):
        provider.construct_event(payload.encode("utf-8"), sign(payload, secret="whsec_other"))


def test_construct_event_rejects_tampered_body(provider):
    payload = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {}}})
    header = sign(payload)
    tampered = payload.replace("evt_1", "evt_2")
    with pytest.raises(BillingWebhookError):
        provider.construct_event(tampered.encode("utf-8"), header)


def test_construct_event_requires_header(provider):
    with pytest.raises(BillingWebhookError):
        provider.construct_event(b"{}", None)


def test_construct_event_requires_webhook_secret():
    unsigned = StripeProvider(secret_key="sk_test_123", webhook_secret=None)
    payload = "{}"
    with pytest.raises(BillingWebhookError):
        unsigned.construct_event(payload.encode("utf-8"), sign(payload))


def test_create_customer_uses_user_idempotency_key(provider):
    with patch("cryptowatch.features.billing.stripe_provider.stripe.Customer.create") as create:
        create.return_value = {"id": "cus_123"}
        customer_id = provider.create_customer("user_alice", "alice@example.com")

    assert customer_id == "cus_123"
    kwargs = create.call_args.kwargs
    assert kwargs["idempotency_key"] == "customer-user_alice"
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["metadata"] == {"userId": "user_alice"}
    assert kwargs["email"] == "alice@example.com"


def test_create_customer_wraps_sdk_errors(provider):
    with patch("cryptowatch.features.billing.stripe_provider.stripe.Customer.create") as create:
        create.side_effect = stripe.APIConnectionError("network down")
        with pytest.raises(BillingProviderError):
            provider.create_customer("user_alice")


def test_checkout_session_uses_inline_monthly_price(provider):
    with patch("cryptowatch.features.billing.stripe_provider.stripe.checkout.Session.create") as create:
        create.return_value = {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/cs_test_1"}
        session = provider.create_checkout_session("cus_123", get_plan("pro"), "user_alice")

    assert session.session_id == "cs_test_1"
    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    line_item = kwargs["line_items"][0]
    assert line_item["price_data"]["unit_amount"] == 2999
    assert line_item["price_data"]["recurring"] == {"interval": "month"}
    assert kwargs["metadata"] == {"userId": "user_alice", "planId": "pro"}
    assert kwargs["subscription_data"]["metadata"] == {"userId": "user_alice", "planId": "pro"}


def test_cancel_treats_missing_subscription_as_done(provider):
    with patch("cryptowatch.features.billing.stripe_provider.stripe.Subscription.cancel") as cancel:
        cancel.side_effect = stripe.InvalidRequestError("No such subscription: 'sub_1'", param="id", code="resource_missing")
        provider.cancel_subscription("sub_1")


def test_cancel_wraps_other_errors(provider):
    with patch("cryptowatch.features.billing.stripe_provider.stripe.Subscription.cancel") as cancel:
        cancel.side_effect = stripe.APIConnectionError("network down")
        with pytest.raises(BillingProviderError):
            provider.cancel_subscription("sub_1")


def test_parse_subscription_falls_back_to_item_periods():
    sub = parse_subscription({
        "id": "sub_1",
        "status": "active",
        "items": {"data": [{"current_period_start": 1767225600, "current_period_end": 1769904000}]},
        "metadata": {"userId": "user_alice"},
    })
    assert sub.current_period_start.timestamp() == 1767225600
    assert sub.current_period_end.timestamp() == 1769904000
    assert sub.metadata == {"userId": "user_alice"}


def test_invoice_helpers_support_parent_shape():
    invoice = {
        "id": "in_1",
        "parent": {"subscription_details": {"subscription": "sub_9", "metadata": {"userId": "u1", "planId": "pro"}}},
        "lines": {"data": [{"period": {"start": 1767225600, "end": 1769904000}}]},
    }
    assert invoice_subscription_id(invoice) == "sub_9"
    assert invoice_subscription_metadata(invoice) == {"userId": "u1", "planId": "pro"}
    start, end = invoice_period(invoice)
    assert end.timestamp() == 1769904000
