"""
Webhook event router.

Takes a signature-verified GatewayEvent, deduplicates it by event id in
billing_events, and dispatches it to the reconciler. Gateways retry until
they get a 2xx, so every outcome here is acknowledged: unknown event types
are ignored, and reconciliation failures are reported to the error
reporter and recorded on the event row instead of propagating.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from cryptowatch.core.database import get_db_session, billing_events
from cryptowatch.core.logging import LOGGER_NAME, log_event
from cryptowatch.features.billing import reconciler, store
from cryptowatch.features.billing.notifications import DatabaseErrorReporter, ErrorReporter, Notifier
from cryptowatch.features.billing.provider import BillingProviderError, GatewayEvent
from cryptowatch.features.billing.stripe_provider import (
    invoice_period,
    invoice_subscription_id,
    invoice_subscription_metadata,
    parse_subscription,
)
from cryptowatch.features.plans.catalog import period_length_days
from cryptowatch.models.subscription import PaymentMethod

logger = logging.getLogger(LOGGER_NAME)

PROCESSED = "processed"
IGNORED = "ignored"
DUPLICATE = "duplicate"
FAILED = "error"

CLAIM_NEW = "new"
CLAIM_RETRY = "retry"
CLAIM_STALE = "stale"

# An unfinished claim older than this is assumed dead and may be taken over
CLAIM_LEASE = timedelta(minutes=10)

_default_reporter = DatabaseErrorReporter()


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str
    subscription_id: Optional[str] = None


def _claim_event(event: GatewayEvent, payload_hash: str, now: datetime) -> Optional[str]:
    """
    Record the event before handling it.

    Returns None when it was already handled or another delivery is handling
    it right now. Otherwise returns how it was claimed: CLAIM_NEW, CLAIM_RETRY
    after a recorded failure, or CLAIM_STALE when an earlier attempt never
    finished within CLAIM_LEASE (the worker died mid-request).
    """
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed, billing_events.c.error).where(
                billing_events.c.event_id == event.event_id
            )
        ).fetchone()
        if existing is not None:
            if existing.processed:
                return None
            if existing.error is not None:
                claim, reclaimable = CLAIM_RETRY, billing_events.c.error.isnot(None)
            else:
                claim = CLAIM_STALE
                reclaimable = or_(
                    billing_events.c.claimed_at.is_(None),
                    billing_events.c.claimed_at < now - CLAIM_LEASE,
                )
            # Conditional update so only one redelivery wins the reclaim
            result = session.execute(
                update(billing_events)
                .where(
                    and_(
                        billing_events.c.event_id == event.event_id,
                        billing_events.c.processed.is_(False),
                        reclaimable,
                    )
                )
                .values(error=None, claimed_at=now)
            )
            return claim if result.rowcount == 1 else None

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    event_id=event.event_id,
                    gateway=event.gateway,
                    event_type=event.event_type,
                    payload_hash=payload_hash,
                    processed=False,
                    claimed_at=now,
                )
            )
    except IntegrityError:
        # Race condition: a concurrent delivery inserted this event first
        return None
    return CLAIM_NEW


def _finish_event(event_id: str, error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"error": error[:2000]} if error else {"processed": True, "processed_at": store.utcnow(), "error": None}
    with get_db_session() as session:
        session.execute(
            update(billing_events).where(billing_events.c.event_id == event_id).values(**values)
        )


def handle_gateway_webhook(
    event: GatewayEvent,
    *,
    raw_body: bytes = b"",
    card_gateway=None,
    reporter: Optional[ErrorReporter] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """Deduplicate, dispatch and acknowledge one gateway event. Never raises."""
    payload_hash = hashlib.sha256(raw_body or event.event_id.encode("utf-8")).hexdigest()
    log_event("info", "billing.webhook.received", event_type=event.event_type, extra={"event_id": event.event_id, "gateway": event.gateway})

    ts = now or store.utcnow()
    try:
        claim = _claim_event(event, payload_hash, ts)
    except Exception as e:
        (reporter or _default_reporter).report(f"webhook.{event.gateway}", e, {"event_id": event.event_id, "stage": "dedup"})
        return WebhookOutcome(event.event_id, event.event_type, FAILED)
    if claim is None:
        logger.info("billing.webhook.duplicate", extra={"event_id": event.event_id})
        return WebhookOutcome(event.event_id, event.event_type, DUPLICATE)
    if claim == CLAIM_STALE:
        (reporter or _default_reporter).report(
            f"webhook.{event.gateway}",
            RuntimeError(f"earlier attempt for {event.event_id} never finished; reprocessing"),
            {"event_id": event.event_id, "event_type": event.event_type, "stage": "reclaim"},
        )

    handler = _HANDLERS.get(event.event_type)
    try:
        if handler is None:
            status, subscription_id = IGNORED, None
        else:
            status, subscription_id = handler(event, card_gateway=card_gateway, notifier=notifier, now=now)
        _finish_event(event.event_id)
    except Exception as e:
        (reporter or _default_reporter).report(
            f"webhook.{event.gateway}",
            e,
            {"event_id": event.event_id, "event_type": event.event_type},
        )
        try:
            _finish_event(event.event_id, error=f"{type(e).__name__}: {e}")
        except Exception as mark_err:
            logger.warning(f"[webhook] could not record failure for {event.event_id}: {mark_err}")
        return WebhookOutcome(event.event_id, event.event_type, FAILED)

    log_event("info", "billing.webhook.handled", subscription_id=subscription_id, event_type=event.event_type, extra={"event_id": event.event_id, "status": status})
    return WebhookOutcome(event.event_id, event.event_type, status, subscription_id)


def _handle_checkout_completed(event: GatewayEvent, *, card_gateway=None, notifier=None, now=None):
    data = event.data
    metadata = data.get("metadata") or {}
    user_id = metadata.get("userId")
    plan_id = metadata.get("planId")
    if not user_id or not plan_id:
        logger.warning("billing.webhook.missing_metadata", extra={"event_id": event.event_id})
        return IGNORED, None

    if data.get("payment_method") == PaymentMethod.HOSTED_CRYPTO.value:
        reference = data.get("reference")
        if not reference:
            return IGNORED, None
        months = int(metadata.get("months") or 1)
        activation = reconciler.activate_subscription(
            user_id,
            plan_id,
            PaymentMethod.HOSTED_CRYPTO,
            reference,
            period_length_days(months),
            event_at=event.created,
            now=now,
            notifier=notifier,
        )
        reconciler.release_superseded(activation, card_gateway)
        return PROCESSED, activation.subscription.id

    gateway_subscription_id = data.get("subscription")
    if isinstance(gateway_subscription_id, dict):
        gateway_subscription_id = gateway_subscription_id.get("id")
    if not gateway_subscription_id:
        return IGNORED, None

    period_start = period_end = None
    if card_gateway is not None:
        try:
            gateway_sub = card_gateway.retrieve_subscription(gateway_subscription_id)
            period_start, period_end = gateway_sub.current_period_start, gateway_sub.current_period_end
        except BillingProviderError as e:
            # Plan period is a safe default; the next invoice event corrects it
            logger.warning(f"[webhook] subscription lookup failed, using plan period: {e}")

    activation = reconciler.activate_subscription(
        user_id,
        plan_id,
        PaymentMethod.CARD,
        gateway_subscription_id,
        period_length_days(1),
        pending_reference=data.get("id"),
        gateway_subscription_id=gateway_subscription_id,
        period_start=period_start,
        period_end=period_end,
        event_at=event.created,
        now=now,
        notifier=notifier,
    )
    reconciler.release_superseded(activation, card_gateway)
    return PROCESSED, activation.subscription.id


def _handle_invoice_succeeded(event: GatewayEvent, *, card_gateway=None, notifier=None, now=None):
    invoice = event.data
    gateway_subscription_id = invoice_subscription_id(invoice)
    if not gateway_subscription_id:
        return IGNORED, None
    period_start, period_end = invoice_period(invoice)

    sub = reconciler.record_payment_success(
        gateway_subscription_id,
        period_start=period_start,
        period_end=period_end,
        event_at=event.created,
        now=now,
    )
    if sub is not None:
        return PROCESSED, sub.id

    # Invoice delivered before checkout.session.completed: activate from metadata
    metadata = invoice_subscription_metadata(invoice)
    if not metadata.get("userId") or not metadata.get("planId"):
        return IGNORED, None
    activation = reconciler.activate_subscription(
        metadata["userId"],
        metadata["planId"],
        PaymentMethod.CARD,
        gateway_subscription_id,
        period_length_days(1),
        gateway_subscription_id=gateway_subscription_id,
        period_start=period_start,
        period_end=period_end,
        event_at=event.created,
        now=now,
        notifier=notifier,
    )
    reconciler.release_superseded(activation, card_gateway)
    return PROCESSED, activation.subscription.id


def _handle_invoice_failed(event: GatewayEvent, *, card_gateway=None, notifier=None, now=None):
    gateway_subscription_id = invoice_subscription_id(event.data)
    if not gateway_subscription_id:
        return IGNORED, None
    sub = reconciler.record_payment_failure(gateway_subscription_id, event_at=event.created, now=now, notifier=notifier)
    return (PROCESSED, sub.id) if sub else (IGNORED, None)


def _handle_subscription_deleted(event: GatewayEvent, *, card_gateway=None, notifier=None, now=None):
    sub = reconciler.record_cancellation(event.data.get("id"), event_at=event.created, now=now)
    return (PROCESSED, sub.id) if sub else (IGNORED, None)


def _handle_subscription_updated(event: GatewayEvent, *, card_gateway=None, notifier=None, now=None):
    gateway_sub = parse_subscription(event.data)
    status = gateway_sub.status
    if status in ("active", "trialing"):
        sub = reconciler.record_payment_success(
            gateway_sub.subscription_id,
            period_start=gateway_sub.current_period_start,
            period_end=gateway_sub.current_period_end,
            event_at=event.created,
            now=now,
        )
    elif status in ("past_due", "unpaid"):
        sub = reconciler.record_payment_failure(gateway_sub.subscription_id, event_at=event.created, now=now, notifier=notifier)
    elif status in ("canceled", "incomplete_expired"):
        sub = reconciler.record_cancellation(gateway_sub.subscription_id, event_at=event.created, now=now)
    else:
        return IGNORED, None
    return (PROCESSED, sub.id) if sub else (IGNORED, None)


_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "invoice.payment_succeeded": _handle_invoice_succeeded,
    "invoice.payment_failed": _handle_invoice_failed,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "customer.subscription.updated": _handle_subscription_updated,
}
