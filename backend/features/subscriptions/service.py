"""
backend/features/subscriptions/service.py

Module subscription store.

One live row per (organization, module), keyed by the provider's
subscription id. Rows are written by:
- the webhook reconciler (upsert_from_event), ordered by provider sequence
- cancel/resume/switch_billing_cycle, optimistically after the provider call
- checkout confirmation, provisionally with sequence 0

Writes for the same (org_id, module_id) are serialized by a striped lock plus
a row lock on the read.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, insert, update, and_

from backend.core.config import get_module_price_id
from backend.core.database import get_db_session, module_subscriptions
from backend.core.errors import ConflictError, NotFoundError, ValidationError
from backend.features.billing.provider import BillingProvider
from backend.features.entitlements.evaluator import has_lapsed, normalize_now
from backend.features.plans.service import coerce_module
from backend.models.plan import ModuleId
from backend.models.subscription import (
    BillingCycle,
    ModuleSubscription,
    SubscriptionEvent,
    SubscriptionStatus,
)


logger = logging.getLogger("suite")

# Fixed pool of locks shared by hash of (org_id, module_id). Never hold two at once.
LOCK_STRIPES = 64
_key_locks: Tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(LOCK_STRIPES))


def _lock_for(org_id: str, module_id: ModuleId) -> threading.Lock:
    return _key_locks[hash((org_id, module_id.value)) % LOCK_STRIPES]


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_model(row) -> ModuleSubscription:
    return ModuleSubscription(
        org_id=row.org_id,
        module_id=ModuleId(row.module_id),
        external_subscription_id=row.external_subscription_id,
        status=SubscriptionStatus(row.status),
        billing_cycle=BillingCycle(row.billing_cycle),
        current_period_start=_utc(row.current_period_start),
        current_period_end=_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        trial_end=_utc(row.trial_end),
        past_due_since=_utc(row.past_due_since),
        last_event_sequence=row.last_event_sequence or 0,
        last_event_id=row.last_event_id,
        stripe_customer_id=row.stripe_customer_id,
        stripe_price_id=row.stripe_price_id,
        pending_confirmation_since=_utc(row.pending_confirmation_since),
        deleted_at=_utc(row.deleted_at),
    )


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of applying one event to the store."""
    applied: bool
    previous: Optional[ModuleSubscription]
    current: Optional[ModuleSubscription]


def get_subscription(org_id: str, module) -> Optional[ModuleSubscription]:
    """
    Live subscription for (org, module).

    None means the organization is on the module's free tier only.
    """
    module_id = coerce_module(module)
    with get_db_session() as session:
        row = session.execute(
            select(module_subscriptions).where(
                and_(
                    module_subscriptions.c.org_id == org_id,
                    module_subscriptions.c.module_id == module_id.value,
                    module_subscriptions.c.deleted_at.is_(None),
                )
            ).order_by(module_subscriptions.c.id.desc())
        ).first()
    return _to_model(row) if row else None


def get_subscription_by_external_id(external_subscription_id: str) -> Optional[ModuleSubscription]:
    """Row for a provider subscription id, soft-deleted rows included."""
    with get_db_session() as session:
        row = session.execute(
            select(module_subscriptions).where(
                module_subscriptions.c.external_subscription_id == external_subscription_id
            )
        ).first()
    return _to_model(row) if row else None


def list_subscriptions(org_id: str) -> List[ModuleSubscription]:
    """All live subscriptions for an organization."""
    with get_db_session() as session:
        rows = session.execute(
            select(module_subscriptions).where(
                and_(
                    module_subscriptions.c.org_id == org_id,
                    module_subscriptions.c.deleted_at.is_(None),
                )
            ).order_by(module_subscriptions.c.module_id)
        ).fetchall()
    return [_to_model(row) for row in rows]


def list_pending_confirmation(older_than: datetime) -> List[ModuleSubscription]:
    """Optimistic writes still unconfirmed by a webhook since before older_than."""
    with get_db_session() as session:
        rows = session.execute(
            select(module_subscriptions).where(
                and_(
                    module_subscriptions.c.pending_confirmation_since.isnot(None),
                    module_subscriptions.c.pending_confirmation_since <= older_than,
                )
            )
        ).fetchall()
    return [_to_model(row) for row in rows]


def upsert_from_event(
    event: SubscriptionEvent,
    now: Optional[datetime] = None,
    provisional: bool = False,
) -> UpsertResult:
    """
    Apply a normalized provider event (idempotent).

    An event whose sequence is lower than the row's last applied sequence is
    a no-op. Equal sequences are re-applied, which leaves the row unchanged
    for a replay of the same event. A different event at an equal sequence
    cannot be ordered here; the reconciler settles it from provider state
    before calling in.

    past_due_since is anchored on the provider's event time when known, so
    a late redelivery does not push the grace window back.

    provisional marks the write as awaiting webhook confirmation
    (checkout confirmation); any confirmed write clears the flag.
    """
    ts = normalize_now(now)
    module_id = event.module_id

    with _lock_for(event.org_id, module_id):
        with get_db_session() as session:
            row = session.execute(
                select(module_subscriptions)
                .where(module_subscriptions.c.external_subscription_id == event.external_subscription_id)
                .with_for_update()
            ).first()
            previous = _to_model(row) if row else None

            if previous and event.sequence < previous.last_event_sequence:
                logger.info(
                    "[subscriptions] stale event ignored",
                    extra={
                        "org_id": event.org_id,
                        "module_id": module_id.value,
                        "event_id": event.event_id,
                        "sequence": event.sequence,
                        "last_event_sequence": previous.last_event_sequence,
                    },
                )
                return UpsertResult(applied=False, previous=previous, current=previous)

            if event.status == SubscriptionStatus.PAST_DUE:
                if previous and previous.status == SubscriptionStatus.PAST_DUE and previous.past_due_since:
                    past_due_since = previous.past_due_since
                elif event.occurred_at is not None:
                    past_due_since = min(_utc(event.occurred_at), ts)
                else:
                    past_due_since = ts
            else:
                past_due_since = None

            if event.status == SubscriptionStatus.CANCELED:
                deleted_at = previous.deleted_at if previous and previous.deleted_at else ts
            else:
                deleted_at = None

            values = {
                "org_id": event.org_id,
                "module_id": module_id.value,
                "status": event.status.value,
                "billing_cycle": event.billing_cycle.value,
                "current_period_start": event.current_period_start,
                "current_period_end": event.current_period_end,
                "cancel_at_period_end": event.cancel_at_period_end,
                "trial_end": event.trial_end,
                "past_due_since": past_due_since,
                "last_event_sequence": max(event.sequence, previous.last_event_sequence if previous else 0),
                "last_event_id": event.event_id,
                "pending_confirmation_since": ts if provisional else None,
                "deleted_at": deleted_at,
                "updated_at": ts,
            }
            if event.stripe_customer_id:
                values["stripe_customer_id"] = event.stripe_customer_id
            if event.stripe_price_id:
                values["stripe_price_id"] = event.stripe_price_id

            if deleted_at is None:
                # A new live subscription supersedes any other live row for the key
                session.execute(
                    update(module_subscriptions)
                    .where(
                        and_(
                            module_subscriptions.c.org_id == event.org_id,
                            module_subscriptions.c.module_id == module_id.value,
                            module_subscriptions.c.external_subscription_id != event.external_subscription_id,
                            module_subscriptions.c.deleted_at.is_(None),
                        )
                    )
                    .values(deleted_at=ts, updated_at=ts)
                )

            if previous:
                session.execute(
                    update(module_subscriptions)
                    .where(module_subscriptions.c.external_subscription_id == event.external_subscription_id)
                    .values(**values)
                )
            else:
                session.execute(
                    insert(module_subscriptions).values(
                        external_subscription_id=event.external_subscription_id,
                        created_at=ts,
                        **values,
                    )
                )

            current = session.execute(
                select(module_subscriptions).where(
                    module_subscriptions.c.external_subscription_id == event.external_subscription_id
                )
            ).first()

    return UpsertResult(applied=True, previous=previous, current=_to_model(current))


def _optimistic_write(subscription: ModuleSubscription, now: datetime, **values) -> ModuleSubscription:
    """Apply local state after a successful provider call, flagged as pending."""
    values["pending_confirmation_since"] = now
    values["updated_at"] = now
    with get_db_session() as session:
        session.execute(
            update(module_subscriptions)
            .where(module_subscriptions.c.external_subscription_id == subscription.external_subscription_id)
            .values(**values)
        )
        row = session.execute(
            select(module_subscriptions).where(
                module_subscriptions.c.external_subscription_id == subscription.external_subscription_id
            )
        ).first()
    return _to_model(row)


def _require_subscription(org_id: str, module_id: ModuleId) -> ModuleSubscription:
    subscription = get_subscription(org_id, module_id)
    if subscription is None:
        raise NotFoundError(f"No {module_id.value} subscription for organization {org_id}")
    return subscription


def cancel(
    org_id: str,
    module,
    provider: BillingProvider,
    at_period_end: bool = True,
    now: Optional[datetime] = None,
) -> ModuleSubscription:
    """
    Cancel a module subscription.

    at_period_end keeps the module paid until current_period_end; otherwise
    the subscription ends now and the row is soft-deleted. The provider is
    called first: if it fails nothing changes locally.
    """
    module_id = coerce_module(module)
    ts = normalize_now(now)

    with _lock_for(org_id, module_id):
        subscription = _require_subscription(org_id, module_id)

        if at_period_end:
            if subscription.cancel_at_period_end:
                return subscription
            provider.set_cancel_at_period_end(subscription.external_subscription_id, True)
            updated = _optimistic_write(subscription, ts, cancel_at_period_end=True)
        else:
            provider.cancel_subscription(subscription.external_subscription_id)
            updated = _optimistic_write(
                subscription,
                ts,
                status=SubscriptionStatus.CANCELED.value,
                cancel_at_period_end=False,
                past_due_since=None,
                deleted_at=ts,
            )

    logger.info(
        "[subscriptions] cancel requested",
        extra={"org_id": org_id, "module_id": module_id.value, "at_period_end": at_period_end},
    )
    return updated


def resume(org_id: str, module, provider: BillingProvider, now: Optional[datetime] = None) -> ModuleSubscription:
    """Withdraw a scheduled cancellation before the period ends."""
    module_id = coerce_module(module)
    ts = normalize_now(now)

    with _lock_for(org_id, module_id):
        subscription = _require_subscription(org_id, module_id)
        if not subscription.cancel_at_period_end:
            raise ConflictError(f"{module_id.value} subscription is not scheduled for cancellation")
        if has_lapsed(subscription, ts):
            raise ConflictError(f"{module_id.value} subscription period has already ended")

        provider.set_cancel_at_period_end(subscription.external_subscription_id, False)
        updated = _optimistic_write(subscription, ts, cancel_at_period_end=False)

    logger.info("[subscriptions] resume requested", extra={"org_id": org_id, "module_id": module_id.value})
    return updated


def switch_billing_cycle(
    org_id: str,
    module,
    billing_cycle,
    provider: BillingProvider,
    now: Optional[datetime] = None,
) -> ModuleSubscription:
    """Move a subscription between monthly and yearly billing (prorated)."""
    module_id = coerce_module(module)
    try:
        cycle = BillingCycle(billing_cycle)
    except ValueError:
        raise ValidationError(f"Unknown billing cycle: {billing_cycle}")
    ts = normalize_now(now)

    price_id = get_module_price_id(module_id.value, cycle.value)
    if not price_id:
        raise ValidationError(f"No price configured for {module_id.value} ({cycle.value})")

    with _lock_for(org_id, module_id):
        subscription = _require_subscription(org_id, module_id)
        if subscription.billing_cycle == cycle:
            raise ConflictError(f"{module_id.value} subscription is already billed {cycle.value}")

        provider.change_subscription_price(subscription.external_subscription_id, price_id, cycle.value)
        updated = _optimistic_write(
            subscription,
            ts,
            billing_cycle=cycle.value,
            stripe_price_id=price_id,
        )

    logger.info(
        "[subscriptions] billing cycle switched",
        extra={"org_id": org_id, "module_id": module_id.value, "billing_cycle": cycle.value},
    )
    return updated


def expire_lapsed(now: Optional[datetime] = None) -> List[Tuple[ModuleSubscription, ModuleSubscription]]:
    """
    Cancel every subscription whose scheduled cancellation has taken effect.

    Returns (previous, current) pairs for each expired row.
    """
    ts = normalize_now(now)
    with get_db_session() as session:
        rows = session.execute(
            select(module_subscriptions).where(
                and_(
                    module_subscriptions.c.cancel_at_period_end.is_(True),
                    module_subscriptions.c.deleted_at.is_(None),
                    module_subscriptions.c.current_period_end.isnot(None),
                    module_subscriptions.c.current_period_end <= ts,
                )
            )
        ).fetchall()
    candidates = [_to_model(row) for row in rows]

    expired = []
    for candidate in candidates:
        with _lock_for(candidate.org_id, candidate.module_id):
            with get_db_session() as session:
                result = session.execute(
                    update(module_subscriptions)
                    .where(
                        and_(
                            module_subscriptions.c.external_subscription_id == candidate.external_subscription_id,
                            module_subscriptions.c.cancel_at_period_end.is_(True),
                            module_subscriptions.c.deleted_at.is_(None),
                        )
                    )
                    .values(
                        status=SubscriptionStatus.CANCELED.value,
                        past_due_since=None,
                        deleted_at=ts,
                        updated_at=ts,
                    )
                )
                if result.rowcount == 0:
                    continue
        current = get_subscription_by_external_id(candidate.external_subscription_id)
        expired.append((candidate, current))
        logger.info(
            "[subscriptions] period ended, subscription canceled",
            extra={"org_id": candidate.org_id, "module_id": candidate.module_id.value},
        )
    return expired
