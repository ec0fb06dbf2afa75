"""
backend/features/entitlements/service.py

Access hooks: the consumer-facing entitlement API.

Thin wrappers that gather inputs (subscription row, usage count) and call the
evaluator. Policy lives in evaluator.py, not here.

Handles:
- "is this module paid for this organization"
- per-feature and per-module limit/usage/remaining
- the billing-settings listing of every module
- hard gating (QuotaExceededError) and downgrade impact
"""

from datetime import datetime
from typing import Dict, List, Optional
import logging

from backend.core.errors import QuotaExceededError
from backend.features.entitlements.evaluator import (
    DowngradeImpact,
    PAST_DUE_GRACE_PERIOD,
    downgrade_impact,
    evaluate,
    in_grace_window,
    is_subscription_paid,
    normalize_now,
)
from backend.features.plans.service import coerce_module, features_for, is_counted, limit_of
from backend.features.subscriptions.service import get_subscription, list_subscriptions
from backend.features.usage.service import get_module_usage, get_usage
from backend.models.entitlement import (
    EntitlementDecision,
    ModuleEntitlements,
    ModuleSubscriptionSummary,
    OrganizationContext,
)
from backend.models.plan import ModuleId


logger = logging.getLogger("suite")


def is_module_paid(context: OrganizationContext, module, now: Optional[datetime] = None) -> bool:
    """Whether the organization holds a paid subscription for the module right now."""
    return is_subscription_paid(get_subscription(context.org_id, module), now)


def get_feature_limit(
    context: OrganizationContext,
    module,
    feature: str,
    now: Optional[datetime] = None,
    requested: Optional[int] = None,
) -> EntitlementDecision:
    """
    Limit, usage and remaining for one feature.

    Usage is read from the owning module's counter for counted quotas only.
    requested makes the decision prospective: can_perform_action tells
    whether that much more fits under the limit.

    Raises:
        ConfigurationError: unknown module/feature or missing usage counter
        UsageUnavailableError: the usage counter failed
    """
    module_id = coerce_module(module)
    # Limit kind is the same on every tier
    current_usage = get_usage(context.org_id, module_id, feature) if is_counted(module_id, feature) else None
    return evaluate(
        context,
        module_id,
        feature,
        current_usage=current_usage,
        subscription=get_subscription(context.org_id, module_id),
        now=now,
        requested=requested,
    )


def get_module_limits(
    context: OrganizationContext,
    module,
    now: Optional[datetime] = None,
) -> ModuleEntitlements:
    """Decision for every feature the catalog defines for a module."""
    module_id = coerce_module(module)
    ts = normalize_now(now)
    subscription = get_subscription(context.org_id, module_id)

    decisions: Dict[str, EntitlementDecision] = {}
    for feature in features_for(module_id):
        current_usage = get_usage(context.org_id, module_id, feature) if is_counted(module_id, feature) else None
        decisions[feature] = evaluate(
            context,
            module_id,
            feature,
            current_usage=current_usage,
            subscription=subscription,
            now=ts,
        )

    return ModuleEntitlements(
        module_id=module_id,
        is_paid=is_subscription_paid(subscription, ts),
        features=decisions,
    )


def list_module_subscriptions(
    context: OrganizationContext,
    now: Optional[datetime] = None,
) -> List[ModuleSubscriptionSummary]:
    """Every module with its lifecycle state, free modules included."""
    ts = normalize_now(now)
    by_module = {sub.module_id: sub for sub in list_subscriptions(context.org_id)}

    summaries = []
    for module_id in ModuleId:
        sub = by_module.get(module_id)
        if sub is None:
            summaries.append(ModuleSubscriptionSummary(module_id=module_id, is_paid=False))
            continue
        grace_ends_at = None
        if in_grace_window(sub, ts):
            grace_ends_at = sub.past_due_since + PAST_DUE_GRACE_PERIOD
        summaries.append(
            ModuleSubscriptionSummary(
                module_id=module_id,
                is_paid=is_subscription_paid(sub, ts),
                status=sub.status,
                billing_cycle=sub.billing_cycle,
                current_period_end=sub.current_period_end,
                cancel_at_period_end=sub.cancel_at_period_end,
                trial_end=sub.trial_end,
                grace_ends_at=grace_ends_at,
                pending_confirmation=sub.pending_confirmation_since is not None,
            )
        )
    return summaries


def require_feature(
    context: OrganizationContext,
    module,
    feature: str,
    now: Optional[datetime] = None,
    requested: Optional[int] = None,
) -> EntitlementDecision:
    """
    Hard gate: return the decision, or raise when the action is not allowed.

    Pass requested for actions that add more than one unit at once, e.g.
    require_feature(ctx, "docs", "storage_mb", requested=upload_mb) before
    storing a file.
    """
    decision = get_feature_limit(context, module, feature, now=now, requested=requested)
    if decision.can_perform_action:
        return decision

    logger.warning(
        "[entitlement] BLOCK",
        extra={
            "org_id": context.org_id,
            "module_id": decision.module_id.value,
            "feature": feature,
            "effective_tier": decision.effective_tier.value,
            "limit": decision.limit,
            "current_usage": decision.current,
            "requested": requested,
        },
    )
    if decision.kind == "capability":
        message = f"{decision.label or feature} is not included in your plan"
    elif requested is not None:
        message = (
            f"{decision.label or feature} limit exceeded "
            f"({decision.current} + {requested} > {decision.limit})"
        )
    else:
        message = f"{decision.label or feature} limit reached ({decision.current}/{decision.limit})"
    raise QuotaExceededError(
        message,
        module_id=decision.module_id.value,
        feature=feature,
        current_usage=decision.current,
        limit=decision.limit,
    )


def check_downgrade(context: OrganizationContext, module) -> DowngradeImpact:
    """Features whose current usage would exceed the organization's own tier without the module subscription."""
    module_id = coerce_module(module)
    bounded = [
        feature
        for feature in features_for(module_id)
        if is_counted(module_id, feature) and not limit_of(context.plan_tier, module_id, feature).is_unlimited
    ]
    usage = get_module_usage(context.org_id, module_id, bounded)
    return downgrade_impact(context, module_id, usage)
