"""
Billing provider protocol.

Defines the interface for payment providers (Stripe, etc.).
This allows swapping providers without changing business logic.
Providers return raw provider vocabulary (statuses, intervals); mapping onto
the product taxonomy happens in the reconciler.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from backend.core.errors import ProviderCommunicationError, WebhookValidationError


@dataclass
class ProviderSubscription:
    """Snapshot of a subscription as the provider reports it."""
    subscription_id: str
    customer_id: Optional[str]
    price_id: Optional[str]
    status: str  # provider status: active, trialing, past_due, unpaid, ...
    org_id: Optional[str]
    module_id: Optional[str]
    billing_cycle: Optional[str]  # monthly, yearly
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    created: int  # provider-issued ordering key
    subscription: Optional[ProviderSubscription]
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout and portal session creation
    - Subscription cancellation, resumption and price changes
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, org_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Ensure a billing customer exists for the organization.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a checkout session for a module subscription.

        metadata is attached to both the session and the subscription it
        creates so webhook events can be routed to (org, module).

        Returns:
            Checkout session URL
        """
        ...

    def retrieve_checkout_subscription(self, session_id: str) -> ProviderSubscription:
        """Subscription created by a completed checkout session."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL
        """
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> ProviderSubscription:
        """Schedule (True) or withdraw (False) cancellation at period end."""
        ...

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Cancel immediately."""
        ...

    def change_subscription_price(self, subscription_id: str, price_id: str, billing_cycle: str) -> ProviderSubscription:
        """Move a subscription to another price (with proration)."""
        ...

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(ProviderCommunicationError):
    """Provider call failed; no local state may change."""
    pass


class BillingWebhookError(WebhookValidationError):
    """Exception for webhook verification/parsing errors."""
    pass
