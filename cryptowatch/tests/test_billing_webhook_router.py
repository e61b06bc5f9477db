"""
Test webhook routing and idempotency.

Events are fed to handle_gateway_webhook already verified; signature
checks are covered in the provider tests.
"""
from datetime import timedelta
from unittest.mock import Mock

from sqlalchemy import insert, select

from cryptowatch.core.database import billing_events, get_db_session, subscriptions
from cryptowatch.features.billing import store
from cryptowatch.features.billing.jobs import run_maintenance_job
from cryptowatch.features.billing.provider import GatewayEvent
from cryptowatch.features.billing.webhook_router import (
    DUPLICATE,
    FAILED,
    IGNORED,
    PROCESSED,
    handle_gateway_webhook,
)
from cryptowatch.models.subscription import PaymentMethod, SubscriptionStatus


def _event(event_id, event_type, data, created, gateway="stripe"):
    return GatewayEvent(event_id=event_id, event_type=event_type, gateway=gateway, created=created, data=data)


def _checkout_completed(now, event_id="evt_checkout", subscription="sub_123", plan="pro", user="user_alice"):
    return _event(
        event_id,
        "checkout.session.completed",
        {"id": "cs_test_1", "subscription": subscription, "metadata": {"userId": user, "planId": plan}},
        now,
    )


def _invoice(event_id, event_type, created, subscription="sub_123", period=None, metadata=None):
    invoice = {"id": f"in_{event_id}", "subscription": subscription}
    if period:
        start, end = period
        invoice["lines"] = {"data": [{"period": {"start": int(start.timestamp()), "end": int(end.timestamp())}}]}
    if metadata:
        invoice["subscription_details"] = {"metadata": metadata}
    return _event(event_id, event_type, invoice, created)


def _subscription_rows():
    with get_db_session() as session:
        return session.execute(select(subscriptions)).fetchall()


def test_checkout_completed_activates_card_subscription(now, card_gateway):
    outcome = handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, now=now)

    assert outcome.status == PROCESSED
    with get_db_session() as session:
        sub = store.get_subscription_by_gateway_id(session, "sub_123")
    assert sub.id == outcome.subscription_id
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.payment_method == PaymentMethod.CARD
    assert sub.current_period_end == now + timedelta(days=30)


def test_checkout_completed_uses_gateway_period(now, card_gateway):
    from cryptowatch.features.billing.provider import GatewaySubscription

    end = now + timedelta(days=31)
    card_gateway.subscriptions["sub_123"] = GatewaySubscription("sub_123", "active", now, end)

    handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, now=now)

    with get_db_session() as session:
        assert store.get_subscription_by_gateway_id(session, "sub_123").current_period_end == end


def test_duplicate_event_is_not_reprocessed(now, card_gateway, notifier):
    event = _checkout_completed(now)
    first = handle_gateway_webhook(event, card_gateway=card_gateway, notifier=notifier, now=now)
    second = handle_gateway_webhook(event, card_gateway=card_gateway, notifier=notifier, now=now)

    assert first.status == PROCESSED
    assert second.status == DUPLICATE
    assert len(_subscription_rows()) == 1
    assert notifier.events() == ["subscription.activated"]
    with get_db_session() as session:
        rows = session.execute(select(billing_events).where(billing_events.c.event_id == "evt_checkout")).fetchall()
    assert len(rows) == 1
    assert rows[0].processed is True


def test_unknown_event_type_is_acknowledged_without_changes(now):
    outcome = handle_gateway_webhook(_event("evt_refund", "charge.refunded", {"id": "ch_1"}, now), now=now)

    assert outcome.status == IGNORED
    assert _subscription_rows() == []


def test_missing_metadata_is_ignored(now):
    event = _event("evt_nometa", "checkout.session.completed", {"id": "cs_1", "subscription": "sub_1"}, now)
    assert handle_gateway_webhook(event, now=now).status == IGNORED
    assert _subscription_rows() == []


def test_handler_failure_is_reported_and_acknowledged(now, card_gateway):
    reporter = Mock()
    event = _checkout_completed(now, event_id="evt_bad_plan", plan="gold")

    outcome = handle_gateway_webhook(event, card_gateway=card_gateway, reporter=reporter, now=now)

    assert outcome.status == FAILED
    reporter.report.assert_called_once()
    source, exc, context = reporter.report.call_args[0]
    assert source == "webhook.stripe"
    assert context["event_id"] == "evt_bad_plan"
    with get_db_session() as session:
        row = session.execute(select(billing_events).where(billing_events.c.event_id == "evt_bad_plan")).fetchone()
    assert row.processed is False
    assert "PlanNotFoundError" in row.error


def test_failed_event_is_retried_on_redelivery(now, card_gateway):
    reporter = Mock()
    event = _checkout_completed(now, event_id="evt_retry", plan="gold")
    handle_gateway_webhook(event, card_gateway=card_gateway, reporter=reporter, now=now)
    again = handle_gateway_webhook(event, card_gateway=card_gateway, reporter=reporter, now=now)

    assert again.status == FAILED
    assert reporter.report.call_count == 2


def _seed_unfinished_claim(event_id, claimed_at):
    with get_db_session() as session:
        session.execute(
            insert(billing_events).values(
                event_id=event_id,
                gateway="stripe",
                event_type="checkout.session.completed",
                payload_hash="0" * 64,
                processed=False,
                claimed_at=claimed_at,
            )
        )


def test_in_flight_event_is_not_taken_over_within_lease(now, card_gateway):
    _seed_unfinished_claim("evt_checkout", now)

    outcome = handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, now=now + timedelta(minutes=5))

    assert outcome.status == DUPLICATE
    assert _subscription_rows() == []


def test_abandoned_claim_is_reprocessed_and_reported(now, card_gateway):
    reporter = Mock()
    _seed_unfinished_claim("evt_checkout", now)
    later = now + timedelta(hours=1)

    outcome = handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, reporter=reporter, now=later)

    assert outcome.status == PROCESSED
    with get_db_session() as session:
        assert store.get_subscription_by_gateway_id(session, "sub_123").status == SubscriptionStatus.ACTIVE
        row = session.execute(select(billing_events).where(billing_events.c.event_id == "evt_checkout")).fetchone()
    assert row.processed is True
    reporter.report.assert_called_once()
    assert reporter.report.call_args[0][2]["stage"] == "reclaim"

    again = handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, reporter=reporter, now=later + timedelta(hours=1))
    assert again.status == DUPLICATE


def test_claim_without_timestamp_is_reclaimed(now, card_gateway):
    _seed_unfinished_claim("evt_checkout", None)

    outcome = handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, reporter=Mock(), now=now)

    assert outcome.status == PROCESSED


def test_invoice_before_checkout_activates_from_metadata(now, card_gateway):
    period = (now, now + timedelta(days=30))
    invoice = _invoice(
        "evt_invoice", "invoice.payment_succeeded", now, period=period,
        metadata={"userId": "user_alice", "planId": "pro"},
    )

    first = handle_gateway_webhook(invoice, card_gateway=card_gateway, now=now)
    late_checkout = handle_gateway_webhook(_checkout_completed(now + timedelta(seconds=5)), card_gateway=card_gateway, now=now)

    assert first.status == PROCESSED
    assert late_checkout.status == PROCESSED
    assert late_checkout.subscription_id == first.subscription_id
    rows = _subscription_rows()
    assert len(rows) == 1
    assert rows[0].status == "active"


def test_invoice_for_unknown_subscription_without_metadata_is_ignored(now):
    outcome = handle_gateway_webhook(_invoice("evt_orphan", "invoice.payment_succeeded", now), now=now)
    assert outcome.status == IGNORED


def test_out_of_order_failure_after_success(now, card_gateway):
    handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, now=now)
    handle_gateway_webhook(
        _invoice("evt_paid", "invoice.payment_succeeded", now + timedelta(hours=2),
                 period=(now + timedelta(days=30), now + timedelta(days=60))),
        now=now,
    )
    # Older failure delivered late
    handle_gateway_webhook(_invoice("evt_failed_old", "invoice.payment_failed", now + timedelta(hours=1)), now=now)

    with get_db_session() as session:
        sub = store.get_subscription_by_gateway_id(session, "sub_123")
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.current_period_end == now + timedelta(days=60)


def test_payment_failure_marks_past_due(now, card_gateway, notifier):
    handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, now=now)
    outcome = handle_gateway_webhook(
        _invoice("evt_failed", "invoice.payment_failed", now + timedelta(days=30)), notifier=notifier, now=now
    )

    assert outcome.status == PROCESSED
    with get_db_session() as session:
        assert store.get_subscription_by_gateway_id(session, "sub_123").status == SubscriptionStatus.PAST_DUE
    assert "subscription.payment_failed" in notifier.events()


def test_subscription_deleted_cancels(now, card_gateway):
    handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, now=now)
    deleted = _event("evt_deleted", "customer.subscription.deleted", {"id": "sub_123", "status": "canceled"}, now + timedelta(days=3))

    outcome = handle_gateway_webhook(deleted, now=now + timedelta(days=3))

    assert outcome.status == PROCESSED
    with get_db_session() as session:
        sub = store.get_subscription_by_gateway_id(session, "sub_123")
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.cancelled_at == now + timedelta(days=3)


def test_subscription_updated_past_due(now, card_gateway):
    handle_gateway_webhook(_checkout_completed(now), card_gateway=card_gateway, now=now)
    updated = _event(
        "evt_updated",
        "customer.subscription.updated",
        {"id": "sub_123", "status": "past_due", "current_period_start": int(now.timestamp()), "current_period_end": int((now + timedelta(days=30)).timestamp())},
        now + timedelta(days=30),
    )

    handle_gateway_webhook(updated, now=now)

    with get_db_session() as session:
        assert store.get_subscription_by_gateway_id(session, "sub_123").status == SubscriptionStatus.PAST_DUE


def test_hosted_charge_confirmation_promotes_pending_row(now):
    with get_db_session() as session:
        pending_id = store.insert_subscription(
            session,
            user_id="user_alice",
            plan_id="premium",
            status=SubscriptionStatus.PENDING,
            payment_method=PaymentMethod.HOSTED_CRYPTO.value,
            payment_reference="CHG123",
            now=now,
        )
    event = _event(
        "cb_evt_1",
        "checkout.session.completed",
        {
            "payment_method": "hosted_crypto",
            "reference": "CHG123",
            "charge_id": "ch-uuid",
            "metadata": {"userId": "user_alice", "planId": "premium", "months": "3"},
        },
        now,
        gateway="coinbase",
    )

    outcome = handle_gateway_webhook(event, now=now)

    assert outcome.subscription_id == pending_id
    with get_db_session() as session:
        sub = store.get_subscription(session, pending_id)
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.payment_method == PaymentMethod.HOSTED_CRYPTO
    assert sub.current_period_end == now + timedelta(days=90)


def test_late_hosted_payment_activates_abandoned_charge(now):
    with get_db_session() as session:
        pending_id = store.insert_subscription(
            session,
            user_id="user_alice",
            plan_id="pro",
            status=SubscriptionStatus.PENDING,
            payment_method=PaymentMethod.HOSTED_CRYPTO.value,
            payment_reference="CHG123",
            now=now,
        )
    assert run_maintenance_job(now + timedelta(days=3))["pending_abandoned"] == 1

    resolved_at = now + timedelta(days=4)
    event = _event(
        "cb_evt_resolved",
        "checkout.session.completed",
        {
            "payment_method": "hosted_crypto",
            "reference": "CHG123",
            "charge_id": "ch-uuid",
            "metadata": {"userId": "user_alice", "planId": "pro", "months": "1"},
        },
        resolved_at,
        gateway="coinbase",
    )

    outcome = handle_gateway_webhook(event, now=resolved_at)

    assert outcome.status == PROCESSED
    assert outcome.subscription_id == pending_id
    with get_db_session() as session:
        active = store.get_active_subscription(session, "user_alice")
    assert active.id == pending_id
    assert active.current_period_end == resolved_at + timedelta(days=30)
