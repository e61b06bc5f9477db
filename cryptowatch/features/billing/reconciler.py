"""
Subscription reconciler: the only code that moves subscriptions between states.

Transitions (anything else is ignored):
    pending   -> active                       activation (promotion of the pending row;
                                              also an abandoned, never-activated one)
    active    -> active                       payment success (period extended)
    active    -> past_due                     payment failure
    past_due  -> active                       payment success
    active/past_due -> cancelled              cancellation, supersession
    active    -> expired                      period end passed

cancelled and expired are terminal; a later payment creates a new record. A
row expired while still pending was never a subscription, so it can still be
promoted when its payment turns up late.
Idempotency rests on the unique payment_reference column and the partial
unique index that allows one active row per user; both are enforced by the
database, so concurrent activations cannot double-apply.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError

from cryptowatch.core.database import get_db_session, subscriptions
from cryptowatch.core.errors import ConflictError, NoActiveSubscriptionError, ValidationError
from cryptowatch.core.logging import LOGGER_NAME, log_event
from cryptowatch.features.billing import store
from cryptowatch.features.billing.notifications import LogNotifier, Notifier, safe_notify
from cryptowatch.features.plans.catalog import get_plan
from cryptowatch.models.subscription import PaymentMethod, Subscription, SubscriptionStatus

logger = logging.getLogger(LOGGER_NAME)

MAX_ACTIVATION_ATTEMPTS = 2

_default_notifier = LogNotifier()

# Statuses that count as the user's current subscription
_CURRENT_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)


@dataclass
class Activation:
    subscription: Subscription
    created: bool
    superseded: List[Subscription] = field(default_factory=list)


def _current_subscriptions(session, user_id: str) -> List[Subscription]:
    rows = session.execute(
        select(subscriptions).where(
            and_(subscriptions.c.user_id == user_id, subscriptions.c.status.in_(_CURRENT_STATUSES))
        )
    ).fetchall()
    return [Subscription.from_row(r) for r in rows]


class _PromotionLost(Exception):
    """The pending row was activated by someone else between read and write."""


def _never_activated(sub: Subscription) -> bool:
    """Pending rows, and pending rows the maintenance job gave up on."""
    if sub.status == SubscriptionStatus.PENDING:
        return True
    return sub.status == SubscriptionStatus.EXPIRED and sub.current_period_start is None


def _is_stale(sub: Subscription, event_at: Optional[datetime], *, strict: bool) -> bool:
    """True when a gateway event is older than the last one applied to `sub`."""
    if event_at is None or sub.last_event_at is None:
        return False
    if strict:
        return event_at <= sub.last_event_at
    return event_at < sub.last_event_at


def activate_subscription(
    user_id: str,
    plan_id: str,
    payment_method: PaymentMethod,
    payment_reference: str,
    period_length_days: int,
    *,
    pending_reference: Optional[str] = None,
    gateway_subscription_id: Optional[str] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    event_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> Activation:
    """
    Activate a paid subscription exactly once per payment reference.

    A second call with the same payment_reference returns the existing record
    with created=False. Any other active/past_due record of the user is
    cancelled and pointed at the new one. If `pending_reference` names the
    user's pending row it is promoted in place instead of inserting.

    Raises:
        ValidationError: unknown plan or an empty period
        ConflictError: lost the single-active race twice in a row
    """
    get_plan(plan_id)
    if not payment_reference:
        raise ValidationError("payment_reference is required")
    method = PaymentMethod(payment_method)

    for attempt in range(MAX_ACTIVATION_ATTEMPTS):
        ts = now or store.utcnow()
        try:
            with get_db_session() as session:
                existing = store.get_subscription_by_reference(session, payment_reference)
                if existing and not _never_activated(existing):
                    return Activation(subscription=existing, created=False)

                # Hosted charges keep the same reference from pending to paid
                pending = existing if existing and existing.user_id == user_id else None
                if pending is None and pending_reference:
                    candidate = store.get_subscription_by_reference(session, pending_reference)
                    if candidate and candidate.user_id == user_id and _never_activated(candidate):
                        pending = candidate
                if existing and pending is None:
                    raise ConflictError("Payment reference belongs to another user")
                new_id = pending.id if pending else str(uuid4())

                start = period_start or ts
                end = period_end or start + timedelta(days=period_length_days)
                if end <= start:
                    raise ValidationError("Subscription period must end after it starts")

                superseded = [s for s in _current_subscriptions(session, user_id) if s.id != new_id]
                for prior in superseded:
                    store.update_subscription(
                        session,
                        prior.id,
                        status=SubscriptionStatus.CANCELLED,
                        cancelled_at=ts,
                        superseded_by=new_id,
                        now=ts,
                    )

                if pending:
                    promoted = store.promote_subscription(
                        session,
                        pending.id,
                        plan_id=plan_id,
                        payment_method=method.value,
                        payment_reference=payment_reference,
                        gateway_subscription_id=gateway_subscription_id,
                        current_period_start=start,
                        current_period_end=end,
                        last_event_at=event_at,
                        now=ts,
                    )
                    if not promoted:
                        # Rolls back the supersession above
                        raise _PromotionLost(pending.id)
                else:
                    store.insert_subscription(
                        session,
                        subscription_id=new_id,
                        user_id=user_id,
                        plan_id=plan_id,
                        status=SubscriptionStatus.ACTIVE,
                        payment_method=method.value,
                        payment_reference=payment_reference,
                        gateway_subscription_id=gateway_subscription_id,
                        current_period_start=start,
                        current_period_end=end,
                        last_event_at=event_at,
                        now=ts,
                    )
                session.flush()
                activated = store.get_subscription(session, new_id)
        except (IntegrityError, _PromotionLost):
            # Lost a race: either the same reference was just activated, or
            # another activation for this user took the active slot.
            with get_db_session() as session:
                existing = store.get_subscription_by_reference(session, payment_reference)
            if existing and not _never_activated(existing):
                return Activation(subscription=existing, created=False)
            if attempt + 1 >= MAX_ACTIVATION_ATTEMPTS:
                raise ConflictError("Concurrent activation for this user; retry")
            logger.info("subscription.activate.retry", extra={"user_id": user_id, "payment_reference": payment_reference})
            continue

        log_event(
            "info",
            "subscription.activated",
            user_id=user_id,
            subscription_id=activated.id,
            extra={
                "plan_id": plan_id,
                "payment_method": method.value,
                "payment_reference": payment_reference,
                "superseded": [s.id for s in superseded],
            },
        )
        safe_notify(
            notifier or _default_notifier,
            user_id,
            "subscription.activated",
            {"plan_id": plan_id, "current_period_end": activated.current_period_end.isoformat()},
        )
        return Activation(subscription=activated, created=True, superseded=superseded)

    raise ConflictError("Concurrent activation for this user; retry")


def release_superseded(activation: Activation, gateway) -> None:
    """
    Stop gateway billing for card subscriptions the activation replaced.

    Best-effort: the local records are already cancelled, a failed gateway
    call is logged for follow-up.
    """
    if gateway is None:
        return
    for prior in activation.superseded:
        if prior.payment_method != PaymentMethod.CARD or not prior.gateway_subscription_id:
            continue
        if prior.gateway_subscription_id == activation.subscription.gateway_subscription_id:
            continue
        try:
            gateway.cancel_subscription(prior.gateway_subscription_id)
        except Exception as e:
            logger.warning(
                f"[reconciler] gateway cancel of superseded {prior.gateway_subscription_id} failed: {e}",
                extra={"user_id": prior.user_id, "subscription_id": prior.id},
            )


def record_payment_success(
    gateway_subscription_id: str,
    *,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    event_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[Subscription]:
    """
    A renewal payment cleared: active/past_due -> active, period end never moves back.

    Returns the (possibly unchanged) record, or None if the id is unknown.
    """
    ts = now or store.utcnow()
    with get_db_session() as session:
        sub = store.get_subscription_by_gateway_id(session, gateway_subscription_id)
        if sub is None:
            return None
        if sub.status.is_terminal or sub.status == SubscriptionStatus.PENDING or _is_stale(sub, event_at, strict=False):
            logger.info(
                "subscription.payment_success.ignored",
                extra={"subscription_id": sub.id, "status": sub.status.value},
            )
            return sub

        new_end = sub.current_period_end
        if period_end and (new_end is None or period_end > new_end):
            new_end = period_end
        values = {"status": SubscriptionStatus.ACTIVE, "current_period_end": new_end}
        if period_start and new_end == period_end:
            values["current_period_start"] = period_start
        if event_at:
            values["last_event_at"] = event_at
        store.update_subscription(session, sub.id, now=ts, **values)
        updated = store.get_subscription(session, sub.id)

    log_event("info", "subscription.payment_succeeded", user_id=updated.user_id, subscription_id=updated.id)
    return updated


def record_payment_failure(
    gateway_subscription_id: str,
    *,
    event_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> Optional[Subscription]:
    """
    A renewal payment failed: active -> past_due.

    Unknown ids and terminal records are left alone. The event must be
    strictly newer than the last applied one, so a late failure cannot undo
    a success that already landed.
    """
    ts = now or store.utcnow()
    with get_db_session() as session:
        sub = store.get_subscription_by_gateway_id(session, gateway_subscription_id)
        if sub is None:
            return None
        if sub.status.is_terminal or sub.status == SubscriptionStatus.PENDING or _is_stale(sub, event_at, strict=True):
            return sub

        values = {"status": SubscriptionStatus.PAST_DUE}
        if event_at:
            values["last_event_at"] = event_at
        store.update_subscription(session, sub.id, now=ts, **values)
        updated = store.get_subscription(session, sub.id)

    log_event("warning", "subscription.payment_failed", user_id=updated.user_id, subscription_id=updated.id)
    safe_notify(notifier or _default_notifier, updated.user_id, "subscription.payment_failed", {"plan_id": updated.plan_id})
    return updated


def record_cancellation(
    gateway_subscription_id: str,
    *,
    event_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[Subscription]:
    """Gateway says the subscription is gone. Idempotent; cancelled_at is set once."""
    ts = now or store.utcnow()
    with get_db_session() as session:
        sub = store.get_subscription_by_gateway_id(session, gateway_subscription_id)
        if sub is None or sub.status.is_terminal:
            return sub
        values = {"status": SubscriptionStatus.CANCELLED, "cancelled_at": ts}
        if event_at:
            values["last_event_at"] = event_at
        store.update_subscription(session, sub.id, now=ts, **values)
        updated = store.get_subscription(session, sub.id)

    log_event("info", "subscription.cancelled", user_id=updated.user_id, subscription_id=updated.id)
    return updated


def cancel_by_user(user_id: str, gateway=None, *, now: Optional[datetime] = None) -> Subscription:
    """
    User-initiated cancellation of their current subscription.

    Card subscriptions are cancelled at the gateway first so the user is not
    billed again; if that call fails nothing changes locally.

    Raises:
        NoActiveSubscriptionError: nothing to cancel
        BillingProviderError: gateway cancel failed
    """
    with get_db_session() as session:
        current = _current_subscriptions(session, user_id)
    if not current:
        raise NoActiveSubscriptionError()
    sub = current[0]

    if sub.payment_method == PaymentMethod.CARD and sub.gateway_subscription_id and gateway is not None:
        gateway.cancel_subscription(sub.gateway_subscription_id)

    ts = now or store.utcnow()
    with get_db_session() as session:
        store.update_subscription(
            session, sub.id, status=SubscriptionStatus.CANCELLED, cancelled_at=ts, now=ts
        )
        updated = store.get_subscription(session, sub.id)

    log_event("info", "subscription.cancelled_by_user", user_id=user_id, subscription_id=sub.id)
    return updated


def expire_subscription(sub: Subscription, *, now: Optional[datetime] = None, notifier: Optional[Notifier] = None) -> Subscription:
    """active -> expired once the period end has passed; anything else is returned as-is."""
    ts = now or store.utcnow()
    if sub.status != SubscriptionStatus.ACTIVE or sub.current_period_end is None or sub.current_period_end > ts:
        return sub
    with get_db_session() as session:
        store.update_subscription(session, sub.id, status=SubscriptionStatus.EXPIRED, now=ts)
        updated = store.get_subscription(session, sub.id)

    log_event("info", "subscription.expired", user_id=sub.user_id, subscription_id=sub.id)
    safe_notify(notifier or _default_notifier, sub.user_id, "subscription.expired", {"plan_id": sub.plan_id})
    return updated


def expire_lapsed(*, now: Optional[datetime] = None, notifier: Optional[Notifier] = None, limit: int = 500) -> List[Subscription]:
    ts = now or store.utcnow()
    with get_db_session() as session:
        lapsed = store.list_lapsed_subscriptions(session, ts, limit=limit)
    return [expire_subscription(sub, now=ts, notifier=notifier) for sub in lapsed]
