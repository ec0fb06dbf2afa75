"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import os
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from backend.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    ProviderSubscription,
)


INTERVAL_TO_CYCLE = {"month": "monthly", "year": "yearly"}


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict from a StripeObject (or a dict already)."""
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


def parse_subscription(data: Dict[str, Any]) -> ProviderSubscription:
    """Normalize a Stripe subscription object."""
    items = data.get("items", {}).get("data", []) or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    metadata = data.get("metadata") or {}

    interval = (price.get("recurring") or {}).get("interval")
    billing_cycle = INTERVAL_TO_CYCLE.get(interval) or metadata.get("billing_cycle")

    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    # Newer API versions report billing periods on the subscription item
    period_start = data.get("current_period_start") or first_item.get("current_period_start")
    period_end = data.get("current_period_end") or first_item.get("current_period_end")

    return ProviderSubscription(
        subscription_id=data["id"],
        customer_id=customer,
        price_id=price.get("id"),
        status=data.get("status") or "",
        org_id=metadata.get("organization_id"),
        module_id=metadata.get("module_id"),
        billing_cycle=billing_cycle,
        current_period_start=_ts(period_start),
        current_period_end=_ts(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
        cancel_at=_ts(data.get("cancel_at")),
        ended_at=_ts(data.get("ended_at")),
        trial_end=_ts(data.get("trial_end")),
    )


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, org_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create or retrieve the Stripe customer for an organization."""
        try:
            customers = stripe.Customer.search(
                query=f'metadata["organization_id"]:"{org_id}"',
                limit=1,
            )
            if customers.data:
                return customers.data[0].id

            customer_data: Dict[str, Any] = {
                "metadata": {"organization_id": org_id}
            }
            if email:
                customer_data["email"] = email
            if name:
                customer_data["name"] = name

            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
                subscription_data={"metadata": metadata or {}},
                allow_promotion_codes=True,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def retrieve_checkout_subscription(self, session_id: str) -> ProviderSubscription:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session lookup failed: {e}")
        data = _as_dict(session)
        subscription = data.get("subscription")
        if not isinstance(subscription, dict):
            raise BillingProviderError(f"Checkout session {session_id} has no subscription yet")
        return parse_subscription(subscription)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=cancel_at_period_end,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}")
        return parse_subscription(_as_dict(subscription))

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")
        return parse_subscription(_as_dict(subscription))

    def change_subscription_price(self, subscription_id: str, price_id: str, billing_cycle: str) -> ProviderSubscription:
        try:
            current = stripe.Subscription.retrieve(subscription_id)
            items = _as_dict(current).get("items", {}).get("data", [])
            if not items:
                raise BillingProviderError(f"Subscription {subscription_id} has no items")
            subscription = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": items[0]["id"], "price": price_id}],
                proration_behavior="create_prorations",
                metadata={"billing_cycle": billing_cycle},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe billing cycle change failed: {e}")
        return parse_subscription(_as_dict(subscription))

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        return parse_subscription(_as_dict(subscription))

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        try:
            event_type = event["type"]
            event_id = event["id"]
            created = int(event.get("created") or 0)
            data = event.get("data", {}).get("object", {})
        except (KeyError, TypeError, AttributeError) as e:
            raise BillingWebhookError(f"Malformed event: {e}")

        subscription = None
        metadata = data.get("metadata") or {}

        if event_type.startswith("customer.subscription."):
            if not data.get("id"):
                raise BillingWebhookError(f"{event_type} without subscription id")
            subscription = parse_subscription(data)

        elif event_type.startswith("invoice."):
            # Invoices reference the subscription; read its current state
            subscription_id = data.get("subscription") or (
                (data.get("parent") or {}).get("subscription_details") or {}
            ).get("subscription")
            if isinstance(subscription_id, dict):
                subscription_id = subscription_id.get("id")
            if subscription_id:
                subscription = self.retrieve_subscription(subscription_id)

        return BillingWebhookResult(
            event_id=event_id,
            event_type=event_type,
            created=created,
            subscription=subscription,
            metadata=metadata,
        )
