"""
Hosted crypto charge gateway (Coinbase Commerce API).

Creates fixed-price charges and verifies/normalizes charge webhooks. A
confirmed charge is translated into the same `checkout.session.completed`
shape the card gateway emits, so the webhook router handles both with one
code path.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from cryptowatch.core.logging import LOGGER_NAME
from cryptowatch.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    GatewayEvent,
    HostedCharge,
)
from cryptowatch.models.plan import Plan

logger = logging.getLogger(LOGGER_NAME)

GATEWAY_NAME = "coinbase"
API_VERSION = "2018-03-22"
SIGNATURE_HEADER = "x-cc-webhook-signature"

# Charge states that mean the money has arrived
PAID_EVENT_TYPES = {"charge:confirmed", "charge:resolved"}


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CoinbaseCommerceProvider:
    """HostedChargeGateway over the Coinbase Commerce REST API."""

    def __init__(
        self,
        http: httpx.Client,
        api_key: Optional[str],
        webhook_secret: Optional[str] = None,
        api_url: str = "https://api.commerce.coinbase.com",
        redirect_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        if not api_key:
            raise BillingProviderError("Coinbase Commerce API key not configured")
        self.http = http
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.redirect_url = redirect_url
        self.cancel_url = cancel_url

    def create_charge(self, user_id: str, plan: Plan, months: int, amount: Decimal) -> HostedCharge:
        body: Dict[str, Any] = {
            "name": plan.name,
            "description": f"{plan.name} - {months} month(s)",
            "pricing_type": "fixed_price",
            "local_price": {"amount": str(amount), "currency": "USD"},
            "metadata": {"userId": user_id, "planId": plan.plan_id, "months": str(months)},
        }
        if self.redirect_url:
            body["redirect_url"] = self.redirect_url
        if self.cancel_url:
            body["cancel_url"] = self.cancel_url

        try:
            resp = self.http.post(
                f"{self.api_url}/charges",
                json=body,
                headers={"X-CC-Api-Key": self.api_key, "X-CC-Version": API_VERSION},
            )
            resp.raise_for_status()
            data = resp.json().get("data") or {}
        except httpx.HTTPError as e:
            raise BillingProviderError(f"Hosted charge creation failed: {e}")
        except ValueError as e:
            raise BillingProviderError(f"Hosted charge creation returned invalid JSON: {e}")

        if not data.get("code") or not data.get("hosted_url"):
            raise BillingProviderError("Hosted charge creation returned an incomplete charge")
        logger.info("hosted_charge.created", extra={"user_id": user_id, "charge_code": data["code"]})
        return HostedCharge(
            charge_id=data.get("id") or data["code"],
            code=data["code"],
            hosted_url=data["hosted_url"],
            expires_at=_parse_iso(data.get("expires_at")),
        )

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        if not self.webhook_secret:
            raise BillingWebhookError("Coinbase Commerce webhook secret not configured")
        if not signature_header:
            raise BillingWebhookError("Missing x-cc-webhook-signature header")

        expected = hmac.new(self.webhook_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature_header.strip().lower()):
            raise BillingWebhookError("Invalid signature")

        try:
            payload = json.loads(raw_body)
            event = payload["event"]
            event_id = event["id"]
            event_type = event["type"]
            charge = event.get("data") or {}
            created = _parse_iso(event.get("created_at"))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        if not isinstance(charge, dict):
            raise BillingWebhookError("Invalid payload: data is not an object")

        if event_type not in PAID_EVENT_TYPES:
            return GatewayEvent(
                event_id=event_id,
                event_type=event_type,
                gateway=GATEWAY_NAME,
                created=created,
                data=charge,
            )

        return GatewayEvent(
            event_id=event_id,
            event_type="checkout.session.completed",
            gateway=GATEWAY_NAME,
            created=created,
            data={
                "payment_method": "hosted_crypto",
                "reference": charge.get("code"),
                "charge_id": charge.get("id"),
                "metadata": charge.get("metadata") or {},
            },
        )
