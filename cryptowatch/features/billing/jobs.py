"""
Scheduled billing maintenance.

- expire active subscriptions whose period has ended
- mark unpaid wallet quotes past their expiry, and their pending rows

Each run is recorded in billing_job_runs. Both steps are idempotent, so the
job can be run from cron at any frequency.
"""
from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from sqlalchemy import insert, update, and_

from cryptowatch.core.database import get_db_session, billing_job_runs, subscriptions
from cryptowatch.core.logging import log_event
from cryptowatch.features.billing import reconciler, store
from cryptowatch.features.billing.notifications import Notifier
from cryptowatch.models.subscription import SubscriptionStatus

# Checkout sessions that never completed are abandoned after this long
STALE_PENDING_AFTER = timedelta(days=2)


def run_maintenance_job(now: datetime, notifier: Optional[Notifier] = None, limit: int = 500) -> Dict[str, Any]:
    expired = reconciler.expire_lapsed(now=now, notifier=notifier, limit=limit)

    with get_db_session() as session:
        expired_quotes = store.expire_pending_payments(session, now)
        abandoned = 0
        if expired_quotes:
            abandoned += session.execute(
                update(subscriptions)
                .where(
                    and_(
                        subscriptions.c.payment_reference.in_(expired_quotes),
                        subscriptions.c.status == SubscriptionStatus.PENDING.value,
                    )
                )
                .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
            ).rowcount
        abandoned += session.execute(
            update(subscriptions)
            .where(
                and_(
                    subscriptions.c.status == SubscriptionStatus.PENDING.value,
                    subscriptions.c.created_at < now - STALE_PENDING_AFTER,
                )
            )
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
        ).rowcount

        stats = {
            "subscriptions_expired": len(expired),
            "quotes_expired": len(expired_quotes),
            "pending_abandoned": abandoned,
        }
        session.execute(
            insert(billing_job_runs).values(
                job_name="billing.maintenance",
                started_at=now,
                finished_at=store.utcnow(),
                status="success",
                stats_json=json.dumps(stats),
            )
        )

    log_event("info", "billing.job.maintenance", extra=stats)
    return {**stats, "timestamp": now.isoformat()}
