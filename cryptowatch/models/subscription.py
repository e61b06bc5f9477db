"""
cryptowatch/models/subscription.py

Subscription and wallet-quote models, built from `subscriptions` and
`pending_payments` rows.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PENDING = "pending"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class PaymentMethod(str, Enum):
    CARD = "card"
    HOSTED_CRYPTO = "hosted_crypto"
    DIRECT_WALLET = "direct_wallet"


class QuoteStatus(str, Enum):
    PENDING = "pending"
    CONSUMED = "consumed"
    EXPIRED = "expired"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """sqlite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    payment_method: PaymentMethod
    payment_reference: str
    gateway_subscription_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    superseded_by: Optional[str] = None
    last_event_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "Subscription":
        data = dict(row._mapping)
        for key in ("current_period_start", "current_period_end", "cancelled_at", "last_event_at", "created_at", "updated_at"):
            data[key] = as_utc(data.get(key))
        return cls(**data)


class PendingPayment(BaseModel):
    """A wallet payment quote: what to send, where, and until when."""
    model_config = ConfigDict(frozen=True)

    payment_id: str
    user_id: str
    plan_id: str
    months: int = Field(ge=1)
    network: str
    currency: str
    expected_amount: Decimal
    discount: Decimal = Decimal("0")
    deposit_address: str
    is_renewal: bool = False
    status: QuoteStatus = QuoteStatus.PENDING
    tx_hash: Optional[str] = None
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_row(cls, row) -> "PendingPayment":
        data = dict(row._mapping)
        data["created_at"] = as_utc(data["created_at"])
        data["expires_at"] = as_utc(data["expires_at"])
        data["expected_amount"] = Decimal(str(data["expected_amount"]))
        data["discount"] = Decimal(str(data.get("discount") or 0))
        return cls(**data)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
