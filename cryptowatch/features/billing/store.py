"""
Billing persistence helpers.

Thin SQLAlchemy Core functions over the billing tables. Everything except
ensure_user() takes the caller's session so a reconciliation step can
group several writes into one transaction.
"""

from datetime import datetime, timezone
from typing import Optional, List
from uuid import uuid4

from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cryptowatch.core.database import (
    get_db_session,
    users,
    subscriptions,
    pending_payments,
)
from cryptowatch.models.subscription import (
    PendingPayment,
    QuoteStatus,
    Subscription,
    SubscriptionStatus,
)
from cryptowatch.models.user import User


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Users

def get_user_by_id(session: Session, user_id: str) -> Optional[User]:
    row = session.execute(select(users).where(users.c.id == user_id)).fetchone()
    return User(**row._mapping) if row else None


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    row = session.execute(select(users).where(users.c.email == email)).fetchone()
    return User(**row._mapping) if row else None


def insert_user(session: Session, user_id: str, email: Optional[str] = None) -> None:
    session.execute(insert(users).values(id=user_id, email=email, created_at=utcnow()))


def update_user(session: Session, user_id: str, **values) -> int:
    result = session.execute(update(users).where(users.c.id == user_id).values(**values))
    return result.rowcount


def ensure_user(user_id: str, email: Optional[str] = None) -> None:
    """Create the users row on first sight (idempotent, race-safe)."""
    with get_db_session() as session:
        existing = get_user_by_id(session, user_id)
        if existing:
            if email and not existing.email and not get_user_by_email(session, email):
                update_user(session, user_id, email=email)
            return
    try:
        with get_db_session() as session:
            insert_user(session, user_id, email)
    except IntegrityError:
        with get_db_session() as session:
            if get_user_by_id(session, user_id):
                # Concurrent first request for the same user already created it
                return
        if not email:
            raise
        # The email is taken by another account; keep the user without it
        with get_db_session() as session:
            insert_user(session, user_id, None)


def set_customer_id_if_absent(session: Session, user_id: str, customer_id: str) -> bool:
    """
    Store the gateway customer id unless one is already set.

    Returns True if this call stored it; False if another writer got there first.
    """
    result = session.execute(
        update(users)
        .where(and_(users.c.id == user_id, users.c.payment_gateway_customer_id.is_(None)))
        .values(payment_gateway_customer_id=customer_id)
    )
    return result.rowcount == 1


# Subscriptions

def get_subscription(session: Session, subscription_id: str) -> Optional[Subscription]:
    row = session.execute(select(subscriptions).where(subscriptions.c.id == subscription_id)).fetchone()
    return Subscription.from_row(row) if row else None


def get_active_subscription(session: Session, user_id: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            )
        )
    ).fetchone()
    return Subscription.from_row(row) if row else None


def get_current_subscription(session: Session, user_id: str) -> Optional[Subscription]:
    """
    The subscription that describes the user's standing.

    Active wins; otherwise the most recently updated record that was ever
    activated (past_due, expired or cancelled) so status endpoints can
    explain why. Pending and abandoned rows are payment intents, not standing.
    """
    active = get_active_subscription(session, user_id)
    if active:
        return active
    row = session.execute(
        select(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.current_period_start.isnot(None),
            )
        )
        .order_by(subscriptions.c.updated_at.desc(), subscriptions.c.created_at.desc())
        .limit(1)
    ).fetchone()
    return Subscription.from_row(row) if row else None


def get_subscription_by_reference(session: Session, payment_reference: str) -> Optional[Subscription]:
    row = session.execute(
        select(subscriptions).where(subscriptions.c.payment_reference == payment_reference)
    ).fetchone()
    return Subscription.from_row(row) if row else None


def get_subscription_by_gateway_id(session: Session, gateway_subscription_id: str) -> Optional[Subscription]:
    """Newest record carrying the gateway subscription id."""
    row = session.execute(
        select(subscriptions)
        .where(subscriptions.c.gateway_subscription_id == gateway_subscription_id)
        .order_by(subscriptions.c.created_at.desc())
        .limit(1)
    ).fetchone()
    return Subscription.from_row(row) if row else None


def list_subscriptions_for_user(session: Session, user_id: str) -> List[Subscription]:
    rows = session.execute(
        select(subscriptions)
        .where(subscriptions.c.user_id == user_id)
        .order_by(subscriptions.c.created_at.asc())
    ).fetchall()
    return [Subscription.from_row(r) for r in rows]


def insert_subscription(
    session: Session,
    *,
    user_id: str,
    plan_id: str,
    status: SubscriptionStatus,
    payment_method: str,
    payment_reference: str,
    subscription_id: Optional[str] = None,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    gateway_subscription_id: Optional[str] = None,
    last_event_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> str:
    ts = now or utcnow()
    sid = subscription_id or str(uuid4())
    session.execute(
        insert(subscriptions).values(
            id=sid,
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus(status).value,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            payment_method=payment_method,
            payment_reference=payment_reference,
            gateway_subscription_id=gateway_subscription_id,
            last_event_at=last_event_at,
            created_at=ts,
            updated_at=ts,
        )
    )
    return sid


def update_subscription(session: Session, subscription_id: str, *, now: Optional[datetime] = None, **values) -> int:
    if "status" in values:
        values["status"] = SubscriptionStatus(values["status"]).value
    values["updated_at"] = now or utcnow()
    result = session.execute(
        update(subscriptions).where(subscriptions.c.id == subscription_id).values(**values)
    )
    return result.rowcount


def promote_subscription(session: Session, subscription_id: str, *, now: Optional[datetime] = None, **values) -> bool:
    """
    Activate a row that has never been activated (pending, or abandoned by the
    maintenance job). Returns False when a concurrent activation got there first.
    """
    values["status"] = SubscriptionStatus.ACTIVE.value
    values["updated_at"] = now or utcnow()
    result = session.execute(
        update(subscriptions)
        .where(and_(subscriptions.c.id == subscription_id, subscriptions.c.current_period_start.is_(None)))
        .values(**values)
    )
    return result.rowcount == 1


def list_lapsed_subscriptions(session: Session, now: datetime, limit: int = 500) -> List[Subscription]:
    rows = session.execute(
        select(subscriptions)
        .where(
            and_(
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                subscriptions.c.current_period_end.is_not(None),
                subscriptions.c.current_period_end < now,
            )
        )
        .limit(limit)
    ).fetchall()
    return [Subscription.from_row(r) for r in rows]


# Wallet quotes

def insert_pending_payment(session: Session, quote: PendingPayment) -> None:
    session.execute(
        insert(pending_payments).values(
            payment_id=quote.payment_id,
            user_id=quote.user_id,
            plan_id=quote.plan_id,
            months=quote.months,
            network=quote.network,
            currency=quote.currency,
            expected_amount=quote.expected_amount,
            discount=quote.discount,
            deposit_address=quote.deposit_address,
            is_renewal=quote.is_renewal,
            status=quote.status.value,
            created_at=quote.created_at,
            expires_at=quote.expires_at,
        )
    )


def get_pending_payment(session: Session, payment_id: str) -> Optional[PendingPayment]:
    row = session.execute(
        select(pending_payments).where(pending_payments.c.payment_id == payment_id)
    ).fetchone()
    return PendingPayment.from_row(row) if row else None


def get_pending_payment_by_tx(session: Session, tx_hash: str) -> Optional[PendingPayment]:
    row = session.execute(
        select(pending_payments).where(pending_payments.c.tx_hash == tx_hash)
    ).fetchone()
    return PendingPayment.from_row(row) if row else None


def consume_pending_payment(session: Session, payment_id: str, tx_hash: str) -> bool:
    """Mark the quote consumed by `tx_hash`; False if it was no longer pending."""
    result = session.execute(
        update(pending_payments)
        .where(
            and_(
                pending_payments.c.payment_id == payment_id,
                pending_payments.c.status == QuoteStatus.PENDING.value,
            )
        )
        .values(status=QuoteStatus.CONSUMED.value, tx_hash=tx_hash)
    )
    return result.rowcount == 1


def expire_pending_payments(session: Session, now: datetime) -> List[str]:
    """Flag unpaid quotes past their expiry; returns their payment ids."""
    rows = session.execute(
        select(pending_payments.c.payment_id).where(
            and_(
                pending_payments.c.status == QuoteStatus.PENDING.value,
                pending_payments.c.expires_at <= now,
            )
        )
    ).fetchall()
    ids = [r[0] for r in rows]
    if ids:
        session.execute(
            update(pending_payments)
            .where(pending_payments.c.payment_id.in_(ids))
            .values(status=QuoteStatus.EXPIRED.value)
        )
    return ids
