"""
Billing service orchestrator.

Coordinates:
- Customer management (one provider customer per organization)
- Module checkout and provisional confirmation
- Billing portal
- Cancel / resume / billing-cycle switch through the provider
- Webhook processing (delegated to the reconciler)

All Stripe-specific code is in stripe_provider.py.
"""
import os
import logging
from typing import Optional, Dict
from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from backend.core.config import get_module_price_id
from backend.core.database import get_db_session, billing_customers
from backend.core.errors import ValidationError, WebhookValidationError
from backend.features.billing import reconciler
from backend.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
)
from backend.features.billing.stripe_provider import StripeProvider
from backend.features.entitlements.evaluator import normalize_now
from backend.features.plans.service import coerce_module
from backend.features.subscriptions import service as store
from backend.models.subscription import BillingCycle, ModuleSubscription


logger = logging.getLogger("suite")

CHECKOUT_CONFIRMED_EVENT = "checkout.confirmed"


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if not provider:
        raise BillingProviderError("Billing not enabled")
    return provider


def get_customer_id(org_id: str) -> Optional[str]:
    with get_db_session() as session:
        result = session.execute(
            select(billing_customers.c.stripe_customer_id).where(
                billing_customers.c.org_id == org_id
            )
        ).fetchone()
    return result[0] if result else None


def ensure_customer_for_org(
    org_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None
) -> Optional[str]:
    """
    Ensure a billing customer exists for the organization.

    Returns:
        Stripe customer ID, or None if billing disabled

    Raises:
        BillingProviderError: If customer creation fails
    """
    provider = get_provider()
    if not provider:
        return None

    existing = get_customer_id(org_id)
    if existing:
        return existing

    # Create customer in Stripe
    stripe_customer_id = provider.ensure_customer(org_id, email, name)

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_customers).values(
                    org_id=org_id,
                    stripe_customer_id=stripe_customer_id,
                )
            )
    except IntegrityError:
        # Another request stored the customer first
        return get_customer_id(org_id)

    return stripe_customer_id


def start_module_checkout(
    org_id: str,
    module,
    billing_cycle,
    success_url: str,
    cancel_url: str
) -> Optional[str]:
    """
    Start checkout session for a module subscription.

    Args:
        org_id: Organization ID
        module: Module to subscribe (crm, invoice, ...)
        billing_cycle: monthly or yearly
        success_url: Redirect URL on success
        cancel_url: Redirect URL on cancel

    Returns:
        Checkout URL, or None if billing disabled

    Raises:
        BillingProviderError: If checkout creation fails
        ValidationError: If no price is configured for (module, cycle)
    """
    provider = get_provider()
    if not provider:
        return None

    module_id = coerce_module(module)
    try:
        cycle = BillingCycle(billing_cycle)
    except ValueError:
        raise ValidationError(f"Unknown billing cycle: {billing_cycle}")

    price_id = get_module_price_id(module_id.value, cycle.value)
    if not price_id:
        raise ValidationError(f"No price configured for {module_id.value} ({cycle.value})")

    stripe_customer_id = ensure_customer_for_org(org_id)
    if not stripe_customer_id:
        raise BillingProviderError("Failed to ensure customer")

    checkout_url = provider.create_checkout_session(
        customer_id=stripe_customer_id,
        price_id=price_id,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={
            "organization_id": org_id,
            "module_id": module_id.value,
            "billing_cycle": cycle.value,
        },
    )

    logger.info(
        "[billing] checkout started",
        extra={"org_id": org_id, "module_id": module_id.value, "billing_cycle": cycle.value},
    )
    return checkout_url


def confirm_checkout(session_id: str, org_id: Optional[str] = None) -> ModuleSubscription:
    """
    Provisionally record the subscription created by a completed checkout.

    Written with sequence 0 so any webhook for the subscription overwrites
    it; flagged as awaiting confirmation until then.

    Raises:
        BillingProviderError: provider unreachable or session incomplete
        ValidationError: session belongs to another organization, or its
            first payment has not gone through yet
    """
    provider = _require_provider()
    snapshot = provider.retrieve_checkout_subscription(session_id)
    if reconciler.awaits_first_payment(snapshot):
        raise ValidationError(f"Checkout session {session_id} is awaiting payment")

    try:
        event = reconciler.event_from_snapshot(
            snapshot,
            event_id=f"checkout:{session_id}",
            event_type=CHECKOUT_CONFIRMED_EVENT,
            sequence=0,
        )
    except WebhookValidationError as e:
        raise ValidationError(f"Checkout session {session_id} cannot be confirmed: {e}")

    if org_id is not None and event.org_id != org_id:
        raise ValidationError(f"Checkout session {session_id} does not belong to organization {org_id}")

    upserted = store.upsert_from_event(event, provisional=True)
    if upserted.applied:
        reconciler.notify_transitions(upserted.previous, upserted.current)
    return upserted.current


def start_portal(org_id: str, return_url: str) -> Optional[str]:
    """
    Start billing portal session for customer self-service.

    Args:
        org_id: Organization ID
        return_url: URL to return to after portal actions

    Returns:
        Portal URL, or None if billing disabled or customer doesn't exist

    Raises:
        BillingProviderError: If portal creation fails
    """
    provider = get_provider()
    if not provider:
        return None

    stripe_customer_id = get_customer_id(org_id)
    if not stripe_customer_id:
        return None

    return provider.create_portal_session(
        customer_id=stripe_customer_id,
        return_url=return_url,
    )


def cancel_module(org_id: str, module, at_period_end: bool = True) -> ModuleSubscription:
    previous = store.get_subscription(org_id, module)
    current = store.cancel(org_id, module, _require_provider(), at_period_end=at_period_end)
    if not at_period_end:
        reconciler.notify_transitions(previous, current)
    return current


def resume_module(org_id: str, module) -> ModuleSubscription:
    return store.resume(org_id, module, _require_provider())


def switch_module_cycle(org_id: str, module, billing_cycle) -> ModuleSubscription:
    return store.switch_billing_cycle(org_id, module, billing_cycle, _require_provider())


def process_webhook_event(headers: Dict[str, str], body: bytes) -> reconciler.WebhookOutcome:
    """
    Process billing webhook event (idempotent).

    Raises:
        WebhookValidationError: If billing disabled, signature invalid or event malformed
        ConfigurationError: If the event type has no mapping
    """
    provider = get_provider()
    if not provider:
        raise WebhookValidationError("Billing not enabled")
    return reconciler.handle_webhook(provider, headers, body, now=normalize_now())
