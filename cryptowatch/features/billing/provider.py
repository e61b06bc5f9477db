"""
Billing provider protocols and normalized value types.

Gateway adapters (Stripe, hosted crypto charges) and the chain reader
translate their SDK/HTTP payloads into these types so the reconciler and
webhook router never touch provider-specific shapes.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass
class GatewayEvent:
    """A signature-verified webhook event."""
    event_id: str
    event_type: str
    gateway: str
    created: Optional[datetime]
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutSession:
    session_id: str
    url: str


@dataclass
class HostedCharge:
    charge_id: str
    code: str
    hosted_url: str
    expires_at: Optional[datetime] = None


@dataclass
class GatewaySubscription:
    subscription_id: str
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ChainTransfer:
    """What a transaction moved, as read back from chain state."""
    tx_hash: str
    network: str
    to_address: Optional[str]
    amount: Decimal
    asset: str  # "USDC" or native symbol
    succeeded: bool
    confirmed: bool
    block_time: Optional[datetime] = None


class CardGateway(Protocol):
    """Card-subscription gateway (Stripe)."""

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        ...

    def create_checkout_session(self, customer_id: str, plan, user_id: str) -> CheckoutSession:
        ...

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        """
        Verify the signature over the raw body and parse the event.

        Raises:
            BillingWebhookError: missing/invalid signature or unparseable body
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        ...


class HostedChargeGateway(Protocol):
    """Hosted crypto checkout (Coinbase Commerce style)."""

    def create_charge(self, user_id: str, plan, months: int, amount: Decimal) -> HostedCharge:
        ...

    def construct_event(self, raw_body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        ...


class ChainReader(Protocol):
    def get_transfer(self, network: str, tx_hash: str) -> Optional[ChainTransfer]:
        """Return the transfer, or None when the chain does not know the hash."""
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors (gateway unreachable, API error)."""
    pass


class BillingWebhookError(BillingProviderError):
    """Webhook signature or payload could not be verified."""
    pass


class ChainUnavailableError(BillingProviderError):
    """Chain RPC unreachable or returned a transport-level error."""
    pass
