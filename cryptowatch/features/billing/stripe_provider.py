"""
Stripe card-subscription gateway.

Wraps the stripe SDK: customers, subscription checkout sessions, webhook
signature verification and subscription retrieval/cancellation. Every SDK
failure surfaces as BillingProviderError; signature problems as
BillingWebhookError.

The API key is passed per request rather than set on the global
`stripe.api_key`, so test and live keys never leak between instances.
"""
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone

import stripe

from cryptowatch.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
    GatewayEvent,
    GatewaySubscription,
)
from cryptowatch.models.plan import Plan

GATEWAY_NAME = "stripe"
SIGNATURE_TOLERANCE_SECONDS = 300


def _ts(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def _already_gone(err: stripe.StripeError) -> bool:
    code = getattr(err, "code", None)
    message = (getattr(err, "user_message", None) or str(err) or "").lower()
    return code == "resource_missing" or "canceled" in message or "cancelled" in message


class StripeProvider:
    """Stripe implementation of the CardGateway protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        if not secret_key:
            raise BillingProviderError("Stripe secret key not configured")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Create a Stripe customer for the user.

        The idempotency key is derived from the user id, so two concurrent
        first-time checkouts for one user get the same customer back.
        """
        params: Dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        try:
            customer = stripe.Customer.create(
                api_key=self.secret_key,
                idempotency_key=f"customer-{user_id}",
                **params,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")
        return customer["id"]

    def create_checkout_session(self, customer_id: str, plan: Plan, user_id: str) -> CheckoutSession:
        """Subscription-mode checkout; configured price id if any, inline monthly price otherwise."""
        if plan.gateway_price_id:
            line_item: Dict[str, Any] = {"price": plan.gateway_price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": plan.name},
                    "unit_amount": int((plan.monthly_price_usd * 100).to_integral_value()),
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            }
        metadata = {"userId": user_id, "planId": plan.plan_id}
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[line_item],
                mode="subscription",
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return CheckoutSession(session_id=session["id"], url=session["url"])

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        """Verify Stripe-Signature over the untouched body, then parse it."""
        if not self.webhook_secret:
            raise BillingWebhookError("Stripe webhook secret not configured")
        if not signature_header:
            raise BillingWebhookError("Missing stripe-signature header")

        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        if not isinstance(event, dict) or "id" not in event or "type" not in event:
            raise BillingWebhookError("Invalid payload: missing id/type")

        return GatewayEvent(
            event_id=event["id"],
            event_type=event["type"],
            gateway=GATEWAY_NAME,
            created=_ts(event.get("created")),
            data=(event.get("data") or {}).get("object") or {},
        )

    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        try:
            sub = stripe.Subscription.retrieve(subscription_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        return parse_subscription(sub)

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel immediately; an already-cancelled or unknown subscription counts as done."""
        try:
            stripe.Subscription.cancel(subscription_id, api_key=self.secret_key)
        except stripe.InvalidRequestError as e:
            if _already_gone(e):
                return
            raise BillingProviderError(f"Stripe subscription cancel failed: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancel failed: {e}")


def parse_subscription(sub) -> GatewaySubscription:
    """
    Normalize a Stripe subscription object (SDK object or plain dict).

    Newer API versions moved the period fields onto subscription items.
    """
    start = sub.get("current_period_start")
    end = sub.get("current_period_end")
    if start is None or end is None:
        items = ((sub.get("items") or {}).get("data")) or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return GatewaySubscription(
        subscription_id=sub["id"],
        status=sub.get("status") or "",
        current_period_start=_ts(start),
        current_period_end=_ts(end),
        metadata=dict(sub.get("metadata") or {}),
    )


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """The subscription an invoice belongs to, across API versions."""
    if invoice.get("subscription"):
        sub = invoice["subscription"]
        return sub if isinstance(sub, str) else sub.get("id")
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return details.get("subscription")


def invoice_subscription_metadata(invoice: Dict[str, Any]) -> Dict[str, str]:
    details = invoice.get("subscription_details") or ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return dict(details.get("metadata") or {})


def invoice_period(invoice: Dict[str, Any]):
    """(start, end) of the billed period, from the first subscription line item."""
    lines = ((invoice.get("lines") or {}).get("data")) or []
    for line in lines:
        period = line.get("period") or {}
        if period.get("end"):
            return _ts(period.get("start")), _ts(period.get("end"))
    return _ts(invoice.get("period_start")), _ts(invoice.get("period_end"))
