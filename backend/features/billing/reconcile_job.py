"""
Scheduled reconciliation job.

Aligns local module subscriptions with their authoritative state:
- subscriptions whose scheduled cancellation has taken effect are canceled
  without waiting for a provider event
- optimistic writes still unconfirmed after the confirmation window are
  re-read from the provider and overwritten
Each run is recorded in billing_job_runs.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional
from sqlalchemy import insert

from backend.core.config import settings
from backend.core.database import get_db_session, billing_job_runs
from backend.core.errors import AppError
from backend.features.billing import reconciler
from backend.features.billing.provider import BillingProvider
from backend.features.entitlements.evaluator import normalize_now
from backend.features.subscriptions import service as store


logger = logging.getLogger("suite")

JOB_NAME = "system.reconcile"
DRIFT_EVENT_TYPE = "reconcile.drift"


def run_reconcile_job(now: Optional[datetime] = None, provider: Optional[BillingProvider] = None, limit: int = 100) -> Dict[str, Any]:
    """
    Run one reconciliation sweep.

    Without a provider (billing disabled) only lapsed cancellations are
    expired; drift re-reads need the provider.
    """
    started_at = normalize_now(now)
    expired = 0
    confirmed = 0
    corrected = 0
    errors = []

    for previous, current in store.expire_lapsed(started_at):
        expired += 1
        reconciler.notify_transitions(previous, current)

    if provider is not None:
        window = timedelta(minutes=settings.BILLING_CONFIRMATION_WINDOW_MINUTES)
        stale = store.list_pending_confirmation(started_at - window)[:limit]
        for pending in stale:
            try:
                snapshot = provider.retrieve_subscription(pending.external_subscription_id)
                if reconciler.awaits_first_payment(snapshot):
                    # Left pending; the next sweep or webhook settles it
                    continue
                event = reconciler.event_from_snapshot(
                    snapshot,
                    event_id=f"reconcile:{pending.external_subscription_id}:{int(started_at.timestamp())}",
                    event_type=DRIFT_EVENT_TYPE,
                    sequence=max(int(started_at.timestamp()), pending.last_event_sequence),
                    now=started_at,
                )
                upserted = store.upsert_from_event(event, now=started_at)
            except AppError as e:
                errors.append({
                    "subscription_id": pending.external_subscription_id,
                    "error": str(e),
                })
                logger.error(
                    "[reconcile] drift re-read failed",
                    extra={
                        "org_id": pending.org_id,
                        "module_id": pending.module_id.value,
                        "error": str(e),
                    },
                )
                continue

            confirmed += 1
            if upserted.applied and _drifted(pending, upserted.current):
                corrected += 1
                logger.warning(
                    "[reconcile] optimistic state overwritten",
                    extra={
                        "org_id": pending.org_id,
                        "module_id": pending.module_id.value,
                        "status": upserted.current.status.value,
                    },
                )
            if upserted.applied:
                reconciler.notify_transitions(upserted.previous, upserted.current)

    stats = {
        "expired": expired,
        "confirmed": confirmed,
        "corrections_applied": corrected,
        "errors": len(errors),
    }
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status="success" if not errors else "partial",
                stats_json=json.dumps(stats),
            )
        )

    return {
        **stats,
        "failures": errors,
        "timestamp": started_at.isoformat(),
    }


def _drifted(before, after) -> bool:
    return (
        before.status != after.status
        or before.cancel_at_period_end != after.cancel_at_period_end
        or before.billing_cycle != after.billing_cycle
        or (before.deleted_at is None) != (after.deleted_at is None)
    )
