"""
Webhook reconciler.

Maps payment-provider events onto module subscription state:
1. Verify signature (provider SDK)
2. Resolve the handler; unmapped event types are configuration errors
3. Map the provider snapshot onto the product status taxonomy
4. Deduplicate by event id (billing_events)
5. Apply one store mutation, ordered by provider sequence; a tie between
   two different events is settled by re-reading the subscription
6. Fire transition listeners (once per applied transition)
7. Mark the event processed
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from backend.core.database import get_db_session, billing_events
from backend.core.errors import ConfigurationError, WebhookValidationError
from backend.core.logging import log_event
from backend.features.billing.provider import (
    BillingProvider,
    BillingWebhookResult,
    ProviderSubscription,
)
from backend.features.entitlements.evaluator import normalize_now
from backend.features.subscriptions import service as store
from backend.models.plan import ModuleId
from backend.models.subscription import (
    BillingCycle,
    ModuleSubscription,
    SubscriptionEvent,
    SubscriptionStatus,
)


logger = logging.getLogger("suite")


# Provider status -> product status. Anything not listed is a configuration error.
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

# First payment still pending: no module state yet, nothing to apply
AWAITING_PAYMENT_STATUSES = frozenset({"incomplete"})

# Events acknowledged without touching subscription state
IGNORED_EVENT_TYPES = frozenset({
    "checkout.session.completed",
    "checkout.session.expired",
    "customer.created",
    "customer.updated",
    "customer.deleted",
    "customer.subscription.trial_will_end",
    "customer.subscription.pending_update_applied",
    "customer.subscription.pending_update_expired",
    "invoice.created",
    "invoice.finalized",
    "invoice.upcoming",
    "invoice.updated",
    "payment_intent.created",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "charge.succeeded",
    "charge.failed",
})

MODULE_ACTIVATED = "module.activated"
MODULE_CANCELED = "module.canceled"
MODULE_PAST_DUE = "module.past_due"
TRANSITION_EVENTS = (MODULE_ACTIVATED, MODULE_CANCELED, MODULE_PAST_DUE)

Listener = Callable[[ModuleSubscription], None]
_listeners: Dict[str, List[Listener]] = {name: [] for name in TRANSITION_EVENTS}


@dataclass
class WebhookOutcome:
    event_id: str
    event_type: str
    duplicate: bool = False
    ignored: bool = False
    applied: bool = False


def add_listener(transition: str, listener: Listener) -> None:
    """Register a side effect (e.g. welcome email) for a subscription transition."""
    if transition not in _listeners:
        raise ConfigurationError(f"Unknown subscription transition: {transition}")
    _listeners[transition].append(listener)


def clear_listeners() -> None:
    for listeners in _listeners.values():
        listeners.clear()


def _is_live_paid_status(subscription: Optional[ModuleSubscription]) -> bool:
    return bool(
        subscription
        and subscription.deleted_at is None
        and subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
    )


def _is_live(subscription: Optional[ModuleSubscription]) -> bool:
    return bool(
        subscription
        and subscription.deleted_at is None
        and subscription.status != SubscriptionStatus.CANCELED
    )


def transitions_between(
    previous: Optional[ModuleSubscription],
    current: Optional[ModuleSubscription],
) -> List[str]:
    """
    Transition names implied by moving from previous to current.

    module.canceled needs a live previous row: a subscription first seen
    already canceled was never activated.
    """
    if current is None:
        return []
    fired = []
    if _is_live_paid_status(current) and not _is_live_paid_status(previous):
        fired.append(MODULE_ACTIVATED)
    if current.status == SubscriptionStatus.CANCELED and _is_live(previous):
        fired.append(MODULE_CANCELED)
    if current.status == SubscriptionStatus.PAST_DUE and (
        previous is None or previous.status != SubscriptionStatus.PAST_DUE
    ):
        fired.append(MODULE_PAST_DUE)
    return fired


def notify_transitions(previous: Optional[ModuleSubscription], current: Optional[ModuleSubscription]) -> List[str]:
    """Run listeners for each transition. Listener failures are logged, never re-raised."""
    fired = transitions_between(previous, current)
    for transition in fired:
        for listener in list(_listeners[transition]):
            try:
                listener(current)
            except Exception as e:
                logger.error(
                    "[reconciler] listener failed",
                    extra={
                        "transition": transition,
                        "org_id": current.org_id,
                        "module_id": current.module_id.value,
                        "error": str(e),
                    },
                )
    return fired


def awaits_first_payment(snapshot: ProviderSubscription) -> bool:
    return snapshot.status in AWAITING_PAYMENT_STATUSES


def map_provider_status(status: str) -> SubscriptionStatus:
    try:
        return PROVIDER_STATUS_MAP[status]
    except KeyError:
        raise ConfigurationError(f"Unmapped provider subscription status: {status!r}")


def event_from_snapshot(
    snapshot: ProviderSubscription,
    event_id: str,
    event_type: str,
    sequence: int,
    now: Optional[datetime] = None,
    force_status: Optional[SubscriptionStatus] = None,
) -> SubscriptionEvent:
    """
    Normalize a provider subscription snapshot into a store event.

    Raises:
        WebhookValidationError: the snapshot cannot be routed to (org, module)
        ConfigurationError: the provider status has no product mapping
    """
    ts = normalize_now(now)
    existing = store.get_subscription_by_external_id(snapshot.subscription_id)

    org_id = snapshot.org_id or (existing.org_id if existing else None)
    raw_module = snapshot.module_id or (existing.module_id.value if existing else None)
    if not org_id or not raw_module:
        raise WebhookValidationError(
            f"Subscription {snapshot.subscription_id} carries no organization/module metadata"
        )
    try:
        module_id = ModuleId(raw_module)
    except ValueError:
        raise WebhookValidationError(f"Unknown module in subscription metadata: {raw_module!r}")

    raw_cycle = snapshot.billing_cycle or (existing.billing_cycle.value if existing else None)
    try:
        billing_cycle = BillingCycle(raw_cycle)
    except ValueError:
        raise WebhookValidationError(
            f"Subscription {snapshot.subscription_id} has no recognizable billing cycle: {raw_cycle!r}"
        )

    status = map_provider_status(snapshot.status)
    cancel_at_period_end = snapshot.cancel_at_period_end
    period_end = snapshot.current_period_end

    if snapshot.cancel_at and status != SubscriptionStatus.CANCELED:
        # Scheduled cancellation at an explicit date
        cancel_at_period_end = True
        if period_end is None or snapshot.cancel_at < period_end:
            period_end = snapshot.cancel_at

    if status == SubscriptionStatus.CANCELED and snapshot.status == "canceled":
        effective = snapshot.ended_at or snapshot.cancel_at or snapshot.current_period_end
        if effective is not None and effective > ts and event_type != "customer.subscription.deleted":
            status = SubscriptionStatus.ACTIVE
            cancel_at_period_end = True
            period_end = effective

    if force_status is not None and status != SubscriptionStatus.CANCELED:
        status = force_status

    return SubscriptionEvent(
        event_id=event_id,
        event_type=event_type,
        sequence=sequence,
        org_id=org_id,
        module_id=module_id,
        external_subscription_id=snapshot.subscription_id,
        status=status,
        billing_cycle=billing_cycle,
        current_period_start=snapshot.current_period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
        trial_end=snapshot.trial_end,
        stripe_customer_id=snapshot.customer_id,
        stripe_price_id=snapshot.price_id,
    )


def _require_snapshot(result: BillingWebhookResult) -> ProviderSubscription:
    if result.subscription is None:
        raise WebhookValidationError(f"{result.event_type} {result.event_id} references no subscription")
    return result.subscription


def _handle_subscription_changed(result: BillingWebhookResult, now: datetime) -> Optional[SubscriptionEvent]:
    snapshot = _require_snapshot(result)
    if awaits_first_payment(snapshot):
        return None
    return event_from_snapshot(snapshot, result.event_id, result.event_type, result.created, now)


def _handle_subscription_deleted(result: BillingWebhookResult, now: datetime) -> Optional[SubscriptionEvent]:
    snapshot = _require_snapshot(result)
    if awaits_first_payment(snapshot):
        return None
    event = event_from_snapshot(snapshot, result.event_id, result.event_type, result.created, now)
    return event.model_copy(update={"status": SubscriptionStatus.CANCELED, "cancel_at_period_end": False})


def _handle_invoice_paid(result: BillingWebhookResult, now: datetime) -> Optional[SubscriptionEvent]:
    if result.subscription is None or awaits_first_payment(result.subscription):
        # One-off invoice, or the subscription is not live yet
        return None
    return event_from_snapshot(result.subscription, result.event_id, result.event_type, result.created, now)


def _handle_invoice_payment_failed(result: BillingWebhookResult, now: datetime) -> Optional[SubscriptionEvent]:
    if result.subscription is None or awaits_first_payment(result.subscription):
        return None
    return event_from_snapshot(
        result.subscription,
        result.event_id,
        result.event_type,
        result.created,
        now,
        force_status=SubscriptionStatus.PAST_DUE,
    )


EVENT_HANDLERS: Dict[str, Callable[[BillingWebhookResult, datetime], Optional[SubscriptionEvent]]] = {
    "customer.subscription.created": _handle_subscription_changed,
    "customer.subscription.updated": _handle_subscription_changed,
    "customer.subscription.paused": _handle_subscription_changed,
    "customer.subscription.resumed": _handle_subscription_changed,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.paid": _handle_invoice_paid,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_payment_failed,
}


def _provider_time(created: int) -> Optional[datetime]:
    if created <= 0:
        return None
    return datetime.fromtimestamp(created, tz=timezone.utc)


def settle_equal_sequence(
    provider: BillingProvider,
    event: SubscriptionEvent,
    now: datetime,
) -> Optional[SubscriptionEvent]:
    """
    Resolve an event that ties with the last applied one.

    Provider sequences have one-second resolution, so two different events
    can share one. Arrival order says nothing about which came last; the
    subscription is re-read from the provider and that state is applied
    instead of either payload. Returns None when the re-read leaves nothing
    to apply.

    Raises:
        BillingProviderError: the re-read failed (the event stays unprocessed)
    """
    stored = store.get_subscription_by_external_id(event.external_subscription_id)
    if (
        stored is None
        or event.sequence != stored.last_event_sequence
        or stored.last_event_id in (None, event.event_id)
    ):
        return event

    logger.info(
        "[reconciler] equal sequence, re-reading subscription",
        extra={
            "event_id": event.event_id,
            "last_event_id": stored.last_event_id,
            "sequence": event.sequence,
            "org_id": event.org_id,
            "module_id": event.module_id.value,
        },
    )
    snapshot = provider.retrieve_subscription(event.external_subscription_id)
    if awaits_first_payment(snapshot):
        return None
    settled = event_from_snapshot(snapshot, event.event_id, event.event_type, event.sequence, now)
    return settled.model_copy(update={"occurred_at": event.occurred_at})


def _record_event(
    result: BillingWebhookResult,
    payload_hash: str,
    event: Optional[SubscriptionEvent],
) -> bool:
    """
    Insert the event into the seen-event log.

    Returns False if the event was already processed. An event recorded by
    an earlier attempt that failed before completing is retried.
    """
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(
                billing_events.c.stripe_event_id == result.event_id
            )
        ).first()
        if existing:
            return not existing.processed

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=result.event_id,
                    event_type=result.event_type,
                    org_id=event.org_id if event else None,
                    module_id=event.module_id.value if event else None,
                    sequence=result.created,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Concurrent delivery of the same event already recorded it
        return False
    return True


def _finish_event(event_id: str, applied: bool, error: Optional[str] = None) -> None:
    values = {"processed_at": datetime.now(timezone.utc)}
    if error is None:
        values.update(processed=True, applied=applied, error=None)
    else:
        values.update(error=error[:2000])
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(**values)
        )


def handle_webhook(
    provider: BillingProvider,
    headers: Dict[str, str],
    body: bytes,
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """
    Verify, deduplicate and apply one provider webhook (idempotent).

    Raises:
        WebhookValidationError: signature or schema failure (never applied)
        ConfigurationError: event type or status without a mapping
    """
    ts = normalize_now(now)

    try:
        result = provider.handle_webhook(headers, body)
    except WebhookValidationError as e:
        log_event("warning", "[reconciler] webhook rejected", error_code="invalid_webhook", extra={"error": str(e)})
        raise

    outcome = WebhookOutcome(event_id=result.event_id, event_type=result.event_type)
    log_extra = {"event_id": result.event_id, "event_type": result.event_type}

    if result.event_type in IGNORED_EVENT_TYPES:
        handler = None
    elif result.event_type in EVENT_HANDLERS:
        handler = EVENT_HANDLERS[result.event_type]
    else:
        log_event(
            "critical",
            "[reconciler] unmapped event type",
            event_type=result.event_type,
            error_code="configuration_error",
            extra={"event_id": result.event_id},
        )
        raise ConfigurationError(f"Unmapped billing event type: {result.event_type}")

    try:
        event = handler(result, ts) if handler else None
    except WebhookValidationError as e:
        log_event(
            "warning",
            "[reconciler] webhook rejected",
            event_type=result.event_type,
            error_code="invalid_webhook",
            extra={"event_id": result.event_id, "error": str(e)},
        )
        raise
    except ConfigurationError:
        logger.critical("[reconciler] unmapped subscription status", extra=log_extra)
        raise

    if event is not None:
        event = event.model_copy(update={"occurred_at": _provider_time(result.created)})

    payload_hash = hashlib.sha256(body).hexdigest()
    if not _record_event(result, payload_hash, event):
        logger.info("[reconciler] duplicate event skipped", extra=log_extra)
        outcome.duplicate = True
        return outcome

    if event is None:
        _finish_event(result.event_id, applied=False)
        outcome.ignored = True
        return outcome

    try:
        settled = settle_equal_sequence(provider, event, ts)
        upserted = store.upsert_from_event(settled, now=ts) if settled is not None else None
    except Exception as e:
        _finish_event(result.event_id, applied=False, error=str(e))
        logger.error(
            "[reconciler] event apply failed",
            extra={**log_extra, "org_id": event.org_id, "module_id": event.module_id.value, "error": str(e)},
        )
        raise

    if upserted is None:
        _finish_event(result.event_id, applied=False)
        outcome.ignored = True
        return outcome

    if upserted.applied:
        notify_transitions(upserted.previous, upserted.current)

    _finish_event(result.event_id, applied=upserted.applied)
    outcome.applied = upserted.applied

    logger.info(
        "[reconciler] event processed",
        extra={
            **log_extra,
            "org_id": event.org_id,
            "module_id": event.module_id.value,
            "status": upserted.current.status.value,
            "applied": upserted.applied,
        },
    )
    return outcome
