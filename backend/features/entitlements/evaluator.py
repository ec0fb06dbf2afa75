"""
backend/features/entitlements/evaluator.py

Entitlement evaluator.

Pure function of (plan catalog, module subscription, usage): no writes, no
memory between calls, safe for unlimited concurrent use.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from backend.core.config import settings
from backend.core.errors import UsageUnavailableError, ValidationError
from backend.features.plans.service import (
    PAID_MODULE_TIER,
    coerce_module,
    feature_label,
    features_for,
    limit_of,
)
from backend.models.entitlement import EntitlementDecision, OrganizationContext
from backend.models.plan import (
    UNLIMITED,
    CapabilityLimit,
    DegradeLimit,
    ModuleId,
    PlanTier,
    QuotaLimit,
)
from backend.models.subscription import ModuleSubscription, SubscriptionStatus


# Paid-tier entitlements survive a failed payment for this long
PAST_DUE_GRACE_PERIOD = timedelta(days=settings.BILLING_PAST_DUE_GRACE_DAYS)

NEAR_LIMIT_PERCENT = 80


def normalize_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def has_lapsed(subscription: ModuleSubscription, now: datetime) -> bool:
    """Scheduled cancellation whose period has already ended."""
    return bool(
        subscription.cancel_at_period_end
        and subscription.current_period_end is not None
        and subscription.current_period_end <= now
    )


def in_grace_window(subscription: ModuleSubscription, now: datetime) -> bool:
    if subscription.status != SubscriptionStatus.PAST_DUE or subscription.past_due_since is None:
        return False
    return now < subscription.past_due_since + PAST_DUE_GRACE_PERIOD


def is_subscription_paid(subscription: Optional[ModuleSubscription], now: Optional[datetime] = None) -> bool:
    """Whether a module subscription currently grants the paid tier."""
    if subscription is None or subscription.deleted_at is not None:
        return False
    ts = normalize_now(now)
    if has_lapsed(subscription, ts):
        return False
    if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return True
    return in_grace_window(subscription, ts)


def resolve_effective_tier(
    context: OrganizationContext,
    subscription: Optional[ModuleSubscription],
    now: Optional[datetime] = None,
) -> Tuple[PlanTier, bool]:
    """
    Return (tier, module_paid) for one module.

    A paid module subscription lifts that module to at least the paid tier;
    other modules keep the organization's global tier.
    """
    if is_subscription_paid(subscription, now):
        return PlanTier.highest(context.plan_tier, PAID_MODULE_TIER), True
    return context.plan_tier, False


def evaluate(
    context: OrganizationContext,
    module,
    feature: str,
    current_usage: Optional[int] = None,
    subscription: Optional[ModuleSubscription] = None,
    now: Optional[datetime] = None,
    requested: Optional[int] = None,
) -> EntitlementDecision:
    """
    Decide one feature for one organization.

    Without requested, a quota allows the action while current < limit.
    With requested (e.g. the size of an upload), it allows it only if
    current + requested <= limit. Per-item quotas have no running usage,
    so current is 0 and requested is the size of the item itself.
    """
    module_id = coerce_module(module)
    tier, paid = resolve_effective_tier(context, subscription, now)
    limit = limit_of(tier, module_id, feature)
    common = {
        "module_id": module_id,
        "feature": feature,
        "kind": limit.kind,
        "effective_tier": tier,
        "module_paid": paid,
        "label": feature_label(module_id, feature),
    }

    if isinstance(limit, CapabilityLimit):
        enabled = limit.enabled
        return EntitlementDecision(
            **common,
            limit=UNLIMITED if enabled else 0,
            current=current_usage or 0,
            remaining=UNLIMITED if enabled else 0,
            percentage=0.0,
            is_at_limit=not enabled,
            is_near_limit=False,
            is_unlimited=enabled,
            is_enabled=enabled,
            is_degraded=False,
            can_perform_action=enabled,
        )

    if isinstance(limit, DegradeLimit):
        return EntitlementDecision(
            **common,
            limit=UNLIMITED,
            current=current_usage or 0,
            remaining=UNLIMITED,
            percentage=0.0,
            is_at_limit=False,
            is_near_limit=False,
            is_unlimited=True,
            is_enabled=True,
            is_degraded=limit.degraded,
            can_perform_action=True,
        )

    if not isinstance(limit, QuotaLimit):
        raise TypeError(f"unsupported limit kind: {limit!r}")

    if current_usage is None and limit.per_item:
        current_usage = 0
    if current_usage is None:
        raise UsageUnavailableError(
            f"Usage for {module_id.value}.{feature} was not supplied",
        )
    if current_usage < 0:
        raise ValidationError(f"Usage cannot be negative: {current_usage}")
    if requested is not None and requested < 0:
        raise ValidationError(f"Requested amount cannot be negative: {requested}")

    if limit.is_unlimited:
        return EntitlementDecision(
            **common,
            limit=UNLIMITED,
            current=current_usage,
            remaining=UNLIMITED,
            percentage=0.0,
            is_at_limit=False,
            is_near_limit=False,
            is_unlimited=True,
            is_enabled=True,
            is_degraded=False,
            can_perform_action=True,
        )

    value = limit.value
    if value == 0:
        percentage = 100.0
    else:
        percentage = min(100.0, current_usage / value * 100)
    if requested is None:
        allowed = current_usage < value
    else:
        allowed = current_usage + requested <= value
    return EntitlementDecision(
        **common,
        limit=value,
        current=current_usage,
        remaining=max(0, value - current_usage),
        percentage=percentage,
        is_at_limit=current_usage >= value,
        is_near_limit=percentage >= NEAR_LIMIT_PERCENT,
        is_unlimited=False,
        is_enabled=True,
        is_degraded=False,
        can_perform_action=allowed,
    )


@dataclass(frozen=True)
class ExceededLimit:
    feature: str
    label: str
    current: int
    free_limit: int


@dataclass(frozen=True)
class DowngradeImpact:
    module_id: ModuleId
    can_downgrade: bool
    exceeding: List[ExceededLimit] = field(default_factory=list)

    @property
    def warning(self) -> str:
        if self.can_downgrade:
            return ""
        lines = [
            f"- {item.label}: {item.current} in use, free limit is {item.free_limit}"
            for item in self.exceeding
        ]
        return (
            "Current usage exceeds the free plan limits:\n"
            + "\n".join(lines)
            + "\n\nNo data will be deleted but access will be limited."
        )


def downgrade_impact(
    context: OrganizationContext,
    module,
    usage: Dict[str, int],
) -> DowngradeImpact:
    """Quota features whose usage would exceed the limits of the global tier.

    usage maps feature name -> current count for every quota feature.
    """
    module_id = coerce_module(module)
    exceeding = []
    for feature in features_for(module_id):
        limit = limit_of(context.plan_tier, module_id, feature)
        if not isinstance(limit, QuotaLimit) or limit.is_unlimited or limit.per_item:
            continue
        if feature not in usage:
            raise UsageUnavailableError(f"Usage for {module_id.value}.{feature} was not supplied")
        current = usage[feature]
        if current > limit.value:
            exceeding.append(
                ExceededLimit(
                    feature=feature,
                    label=feature_label(module_id, feature),
                    current=current,
                    free_limit=limit.value,
                )
            )
    return DowngradeImpact(module_id=module_id, can_downgrade=not exceeding, exceeding=exceeding)
