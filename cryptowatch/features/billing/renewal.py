"""
Renewal/expiry calculations.

Pure functions over a subscription snapshot and an explicit `now`; nothing
here reads the clock or the database.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from cryptowatch.core.config import settings
from cryptowatch.features.plans.catalog import RENEWAL_MONTHS, get_plan, multi_month_discount, quote_price
from cryptowatch.models.plan import Plan
from cryptowatch.models.subscription import Subscription, SubscriptionStatus

ONE_DAY = timedelta(days=1)


@dataclass
class RenewalOption:
    months: int
    price: Decimal
    discount: Decimal
    monthly_equivalent: Decimal

    def to_dict(self) -> dict:
        return {
            "months": self.months,
            "price": float(self.price),
            "discount": float(self.discount),
            "monthlyEquivalent": float(self.monthly_equivalent),
        }


@dataclass
class RenewalInfo:
    expired_plan: Optional[str]
    plan_name: Optional[str]
    days_until_expiry: int
    needs_renewal: bool
    expires_at: Optional[datetime]
    expired: bool = False
    renewal_options: List[RenewalOption] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "expiredPlan": self.expired_plan,
            "planName": self.plan_name,
            "daysUntilExpiry": self.days_until_expiry,
            "needsRenewal": self.needs_renewal,
            "expired": self.expired,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "renewalOptions": [o.to_dict() for o in self.renewal_options],
        }


def days_until_expiry(period_end: Optional[datetime], now: datetime) -> int:
    """Whole days left, rounded up: 3 days 2 hours -> 4. Never negative."""
    if period_end is None:
        return 0
    remaining = (period_end - now) / ONE_DAY
    return max(0, math.ceil(remaining))


def is_expired(sub: Subscription, now: datetime) -> bool:
    if sub.status == SubscriptionStatus.EXPIRED:
        return True
    return sub.status == SubscriptionStatus.ACTIVE and sub.current_period_end is not None and sub.current_period_end <= now


def needs_renewal(sub: Optional[Subscription], now: datetime, reminder_days: Optional[int] = None) -> bool:
    if sub is None or sub.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.PENDING):
        return False
    if is_expired(sub, now) or sub.status == SubscriptionStatus.PAST_DUE:
        return True
    threshold = reminder_days if reminder_days is not None else settings.RENEWAL_REMINDER_DAYS
    return days_until_expiry(sub.current_period_end, now) <= threshold


def renewal_options(plan: Plan, *, crypto: bool = True) -> List[RenewalOption]:
    options = []
    for months in RENEWAL_MONTHS:
        price = quote_price(plan, months, crypto=crypto)
        options.append(
            RenewalOption(
                months=months,
                price=price,
                discount=multi_month_discount(months),
                monthly_equivalent=(price / months).quantize(Decimal("0.01")),
            )
        )
    return options


def get_renewal_info(sub: Optional[Subscription], now: datetime, reminder_days: Optional[int] = None) -> RenewalInfo:
    if sub is None:
        return RenewalInfo(
            expired_plan=None,
            plan_name=None,
            days_until_expiry=0,
            needs_renewal=False,
            expires_at=None,
        )

    plan = get_plan(sub.plan_id)
    return RenewalInfo(
        expired_plan=sub.plan_id,
        plan_name=plan.name,
        days_until_expiry=days_until_expiry(sub.current_period_end, now),
        needs_renewal=needs_renewal(sub, now, reminder_days),
        expires_at=sub.current_period_end,
        expired=is_expired(sub, now),
        renewal_options=[] if plan.is_free else renewal_options(plan),
    )
