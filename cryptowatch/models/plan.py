"""
cryptowatch/models/plan.py

Plan model: a subscription tier with its prices and entitlements.
"""

from decimal import Decimal
from typing import FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field


class CryptoPrice(BaseModel):
    """Monthly price when paid in a stablecoin."""
    model_config = ConfigDict(frozen=True)

    currency: str = "USDC"
    amount: Decimal = Field(ge=0)


class Plan(BaseModel):
    """
    Plan represents a paid (or free) capability tier.

    Prices are per month; multi-month totals and discounts come from the
    catalog (cryptowatch.features.plans.catalog).
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    monthly_price_usd: Decimal = Field(ge=0)
    crypto_price: CryptoPrice
    entitlements: FrozenSet[str] = frozenset()
    gateway_price_id: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.monthly_price_usd == 0
