"""
backend/models/entitlement.py

Evaluator output. Never persisted; recomputed on every query.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict

from backend.models.plan import ModuleId, PlanTier
from backend.models.subscription import BillingCycle, SubscriptionStatus


class OrganizationContext(BaseModel):
    """Explicit plan context threaded into every entitlement call."""
    model_config = ConfigDict(frozen=True)

    org_id: str
    plan_tier: PlanTier = PlanTier.FREE


class EntitlementDecision(BaseModel):
    """
    Per-feature decision.

    Arithmetic invariant: remaining == max(0, limit - current) unless
    is_unlimited, in which case remaining == limit == UNLIMITED.
    """
    model_config = ConfigDict(frozen=True)

    module_id: ModuleId
    feature: str
    kind: str
    effective_tier: PlanTier
    module_paid: bool
    limit: int
    current: int
    remaining: int
    percentage: float
    is_at_limit: bool
    is_near_limit: bool
    is_unlimited: bool
    is_enabled: bool
    is_degraded: bool
    can_perform_action: bool
    label: Optional[str] = None


class ModuleEntitlements(BaseModel):
    """All feature decisions for one module."""
    model_config = ConfigDict(frozen=True)

    module_id: ModuleId
    is_paid: bool
    features: Dict[str, EntitlementDecision]


class ModuleSubscriptionSummary(BaseModel):
    """Billing-settings row; modules without a subscription have status None."""
    model_config = ConfigDict(frozen=True)

    module_id: ModuleId
    is_paid: bool
    status: Optional[SubscriptionStatus] = None
    billing_cycle: Optional[BillingCycle] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    pending_confirmation: bool = False
