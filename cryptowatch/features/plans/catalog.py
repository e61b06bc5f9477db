"""
cryptowatch/features/plans/catalog.py

Plan catalog: the static set of tiers, their monthly prices, and the
multi-month renewal discount schedule.

Pure lookups, no persistence. Prices are Decimal and totals are rounded
half-up to cents.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from cryptowatch.core.config import settings
from cryptowatch.core.errors import PlanNotFoundError, ValidationError
from cryptowatch.models.plan import CryptoPrice, Plan


CENTS = Decimal("0.01")

# Period length used for crypto and manual renewals (card periods come from the gateway)
DAYS_PER_MONTH = 30

DEFAULT_PLANS = {
    "free": {
        "name": "Free Plan",
        "monthly_price_usd": "0",
        "crypto_amount": "0",
        "entitlements": ["basic_alerts", "limited_api"],
    },
    "pro": {
        "name": "Pro Plan",
        "monthly_price_usd": "29.99",
        "crypto_amount": "29.99",
        "entitlements": ["advanced_alerts", "unlimited_api", "data_export", "ai_analysis"],
    },
    "premium": {
        "name": "Premium Plan",
        "monthly_price_usd": "99.99",
        "crypto_amount": "99.99",
        "entitlements": ["all_features", "priority_support", "custom_integrations"],
    },
}

FREE_PLAN_ID = "free"

# Renewal lengths offered to users, and the discount each tier earns.
RENEWAL_MONTHS = (1, 3, 6, 12)
RENEWAL_DISCOUNTS = {
    1: Decimal("0"),
    3: Decimal("0.05"),
    6: Decimal("0.10"),
    12: Decimal("0.20"),
}


def _gateway_price_id(plan_id: str) -> Optional[str]:
    price_map = {
        "pro": settings.STRIPE_PRICE_PRO,
        "premium": settings.STRIPE_PRICE_PREMIUM,
    }
    return price_map.get(plan_id)


def _build_plan(plan_id: str) -> Plan:
    cfg = DEFAULT_PLANS[plan_id]
    return Plan(
        plan_id=plan_id,
        name=cfg["name"],
        monthly_price_usd=Decimal(cfg["monthly_price_usd"]),
        crypto_price=CryptoPrice(currency="USDC", amount=Decimal(cfg["crypto_amount"])),
        entitlements=frozenset(cfg["entitlements"]),
        gateway_price_id=_gateway_price_id(plan_id),
    )


def get_plan(plan_id: str) -> Plan:
    """
    Look up a plan by id.

    Raises:
        PlanNotFoundError: unknown plan id
    """
    if plan_id not in DEFAULT_PLANS:
        raise PlanNotFoundError(f"Invalid plan: {plan_id}")
    return _build_plan(plan_id)


def get_paid_plan(plan_id: str) -> Plan:
    """Like get_plan, but rejects the free tier (nothing to pay for)."""
    plan = get_plan(plan_id)
    if plan.is_free:
        raise PlanNotFoundError(f"Plan {plan_id} cannot be purchased")
    return plan


def list_plans() -> List[Plan]:
    return [_build_plan(plan_id) for plan_id in DEFAULT_PLANS]


def list_paid_plans() -> List[Plan]:
    return [p for p in list_plans() if not p.is_free]


def multi_month_discount(months: int) -> Decimal:
    """
    Discount fraction for paying `months` months up front.

    Step function over RENEWAL_DISCOUNTS: the largest tier not exceeding
    `months` applies, so the discount never decreases as months grow.
    """
    if not isinstance(months, int) or months < 1:
        raise ValidationError("months must be a positive integer")
    eligible = [m for m in RENEWAL_DISCOUNTS if m <= months]
    return RENEWAL_DISCOUNTS[max(eligible)]


def quote_price(plan: Plan, months: int = 1, *, crypto: bool = False) -> Decimal:
    """Total price for `months` of `plan` after the multi-month discount."""
    monthly = plan.crypto_price.amount if crypto else plan.monthly_price_usd
    discount = multi_month_discount(months)
    total = Decimal(months) * monthly * (Decimal("1") - discount)
    return total.quantize(CENTS, rounding=ROUND_HALF_UP)


def period_length_days(months: int) -> int:
    if months < 1:
        raise ValidationError("months must be a positive integer")
    return months * DAYS_PER_MONTH


def plan_to_dict(plan: Plan) -> dict:
    """Public JSON shape of a plan."""
    return {
        "id": plan.plan_id,
        "name": plan.name,
        "price": float(plan.monthly_price_usd),
        "currency": "USD",
        "cryptoPrice": {"currency": plan.crypto_price.currency, "amount": float(plan.crypto_price.amount)},
        "features": sorted(plan.entitlements),
    }
