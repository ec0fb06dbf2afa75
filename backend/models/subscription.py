"""
backend/models/subscription.py

Module subscription records and the normalized provider event that drives
their lifecycle.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from backend.models.plan import ModuleId


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ModuleSubscription(BaseModel):
    """
    One subscription row per (organization, module).

    Mutated only by the webhook reconciler, or optimistically by
    cancel/resume/switch calls awaiting confirmation
    (pending_confirmation_since is set until the next webhook lands).
    """
    model_config = ConfigDict(frozen=True)

    org_id: str
    module_id: ModuleId
    external_subscription_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    past_due_since: Optional[datetime] = None
    last_event_sequence: int = 0
    last_event_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    pending_confirmation_since: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class SubscriptionEvent(BaseModel):
    """
    Provider event already mapped onto the product's status taxonomy.

    sequence is the provider-issued ordering key (event creation time);
    a lower sequence never overwrites a higher one. occurred_at is the same
    instant as a datetime, when the event came from the provider.
    """
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    sequence: int
    org_id: str
    module_id: ModuleId
    external_subscription_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
