"""
Entitlement evaluator tests.

The evaluator is a pure function of (catalog, module subscription, usage):
no database is touched here.
"""
from datetime import datetime, timedelta, timezone

import pytest

from backend.core.errors import ConfigurationError, UsageUnavailableError, ValidationError
from backend.features.entitlements.evaluator import (
    PAST_DUE_GRACE_PERIOD,
    downgrade_impact,
    evaluate,
    is_subscription_paid,
    resolve_effective_tier,
)
from backend.models.entitlement import OrganizationContext
from backend.models.plan import UNLIMITED, ModuleId, PlanTier
from backend.models.subscription import BillingCycle, ModuleSubscription, SubscriptionStatus


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

FREE = OrganizationContext(org_id="org_free", plan_tier=PlanTier.FREE)
PRO = OrganizationContext(org_id="org_pro", plan_tier=PlanTier.PRO)
ENTERPRISE = OrganizationContext(org_id="org_ent", plan_tier=PlanTier.ENTERPRISE)


def _sub(status=SubscriptionStatus.ACTIVE, module=ModuleId.CRM, **kwargs):
    values = {
        "org_id": "org_free",
        "module_id": module,
        "external_subscription_id": "sub_123",
        "status": status,
        "billing_cycle": BillingCycle.MONTHLY,
        "current_period_start": NOW - timedelta(days=10),
        "current_period_end": NOW + timedelta(days=20),
    }
    values.update(kwargs)
    return ModuleSubscription(**values)


def test_free_contacts_at_limit():
    decision = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=100, now=NOW)

    assert decision.limit == 100
    assert decision.is_at_limit is True
    assert decision.can_perform_action is False
    assert decision.remaining == 0
    assert decision.percentage == 100
    assert decision.is_near_limit is True


def test_pro_contacts_low_usage():
    decision = evaluate(PRO, ModuleId.CRM, "contacts", current_usage=87, now=NOW)

    assert decision.limit == 10000
    assert decision.is_near_limit is False
    assert decision.percentage == pytest.approx(0.87)
    assert decision.remaining == 9913
    assert decision.can_perform_action is True


def test_one_below_limit_is_allowed():
    decision = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=99, now=NOW)
    assert decision.can_perform_action is True
    assert decision.is_at_limit is False
    assert decision.remaining == 1


def test_near_limit_threshold_is_inclusive():
    assert evaluate(FREE, ModuleId.CRM, "contacts", current_usage=80, now=NOW).is_near_limit is True
    assert evaluate(FREE, ModuleId.CRM, "contacts", current_usage=79, now=NOW).is_near_limit is False


def test_percentage_clamped_when_usage_exceeds_quota():
    decision = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=250, now=NOW)
    assert decision.percentage == 100
    assert decision.remaining == 0
    assert decision.can_perform_action is False


@pytest.mark.parametrize("usage", [0, 1, 10**9])
def test_unlimited_short_circuits(usage):
    decision = evaluate(ENTERPRISE, ModuleId.CRM, "contacts", current_usage=usage, now=NOW)
    assert decision.is_unlimited is True
    assert decision.limit == UNLIMITED
    assert decision.remaining == UNLIMITED
    assert decision.percentage == 0
    assert decision.can_perform_action is True


@pytest.mark.parametrize("usage", [0, 5, 9, 10, 11, 40])
def test_can_perform_action_matches_strict_comparison(usage):
    decision = evaluate(FREE, ModuleId.INVOICE, "invoices_per_month", current_usage=usage, now=NOW)
    assert decision.can_perform_action == (usage < 10)
    assert 0 <= decision.percentage <= 100


def test_evaluate_is_pure():
    sub = _sub()
    first = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=42, subscription=sub, now=NOW)
    evaluate(FREE, ModuleId.INVOICE, "invoices_per_month", current_usage=3, now=NOW)
    second = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=42, subscription=sub, now=NOW)
    assert first == second


def test_capability_disabled_on_free():
    decision = evaluate(FREE, ModuleId.CRM, "export_enabled", now=NOW)
    assert decision.kind == "capability"
    assert decision.is_enabled is False
    assert decision.can_perform_action is False
    assert decision.is_at_limit is True


def test_capability_enabled_on_pro():
    decision = evaluate(PRO, ModuleId.CRM, "export_enabled", now=NOW)
    assert decision.is_enabled is True
    assert decision.can_perform_action is True


def test_degrade_flag_never_blocks():
    decision = evaluate(FREE, ModuleId.CRM, "stats_blurred", now=NOW)
    assert decision.kind == "degrade"
    assert decision.is_degraded is True
    assert decision.can_perform_action is True
    assert decision.is_enabled is True

    paid = evaluate(PRO, ModuleId.INVOICE, "watermark_pdf", now=NOW)
    assert paid.is_degraded is False


def test_missing_usage_for_quota_is_an_error():
    with pytest.raises(UsageUnavailableError):
        evaluate(FREE, ModuleId.CRM, "contacts", current_usage=None, now=NOW)


def test_negative_usage_rejected():
    with pytest.raises(ValidationError):
        evaluate(FREE, ModuleId.CRM, "contacts", current_usage=-1, now=NOW)


def test_requested_amount_must_fit_under_limit():
    fits = evaluate(FREE, ModuleId.DOCS, "storage_mb", current_usage=200, requested=824, now=NOW)
    too_big = evaluate(FREE, ModuleId.DOCS, "storage_mb", current_usage=200, requested=900, now=NOW)

    assert fits.can_perform_action is True
    assert too_big.can_perform_action is False
    assert too_big.is_at_limit is False
    assert too_big.remaining == 824


def test_requested_zero_at_limit_is_allowed():
    decision = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=100, requested=0, now=NOW)
    assert decision.can_perform_action is True


def test_requested_on_unlimited_quota_is_allowed():
    decision = evaluate(ENTERPRISE, ModuleId.DOCS, "storage_mb", current_usage=10**9, requested=10**6, now=NOW)
    assert decision.can_perform_action is True


def test_negative_requested_rejected():
    with pytest.raises(ValidationError):
        evaluate(FREE, ModuleId.DOCS, "storage_mb", current_usage=0, requested=-5, now=NOW)


def test_per_item_ceiling_checks_the_item_alone():
    small = evaluate(FREE, ModuleId.DOCS, "max_file_size_mb", requested=10, now=NOW)
    large = evaluate(FREE, ModuleId.DOCS, "max_file_size_mb", requested=11, now=NOW)
    paid = evaluate(FREE, ModuleId.DOCS, "max_file_size_mb", requested=90, subscription=_sub(module=ModuleId.DOCS), now=NOW)

    assert small.current == 0
    assert small.can_perform_action is True
    assert large.can_perform_action is False
    assert paid.limit == 100
    assert paid.can_perform_action is True


def test_unknown_feature_is_configuration_error():
    with pytest.raises(ConfigurationError):
        evaluate(FREE, ModuleId.CRM, "spaceships", current_usage=0, now=NOW)


def test_module_override_applies_only_to_that_module():
    crm_sub = _sub(module=ModuleId.CRM)

    crm = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=150, subscription=crm_sub, now=NOW)
    invoice = evaluate(FREE, ModuleId.INVOICE, "invoices_per_month", current_usage=10, now=NOW)

    assert crm.effective_tier == PlanTier.PRO
    assert crm.module_paid is True
    assert crm.limit == 10000
    assert crm.can_perform_action is True
    assert invoice.effective_tier == PlanTier.FREE
    assert invoice.can_perform_action is False


def test_trialing_counts_as_paid():
    assert is_subscription_paid(_sub(status=SubscriptionStatus.TRIALING), NOW) is True


@pytest.mark.parametrize("status", [SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELED])
def test_paused_and_canceled_are_not_paid(status):
    tier, paid = resolve_effective_tier(FREE, _sub(status=status), NOW)
    assert paid is False
    assert tier == PlanTier.FREE


def test_past_due_within_grace_keeps_paid_tier():
    sub = _sub(status=SubscriptionStatus.PAST_DUE, past_due_since=NOW - timedelta(days=2))
    decision = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=150, subscription=sub, now=NOW)
    assert decision.effective_tier == PlanTier.PRO
    assert decision.can_perform_action is True


def test_past_due_beyond_grace_falls_back_to_global_tier():
    sub = _sub(
        status=SubscriptionStatus.PAST_DUE,
        past_due_since=NOW - PAST_DUE_GRACE_PERIOD - timedelta(seconds=1),
    )
    decision = evaluate(FREE, ModuleId.CRM, "contacts", current_usage=150, subscription=sub, now=NOW)
    assert decision.effective_tier == PlanTier.FREE
    assert decision.module_paid is False
    assert decision.can_perform_action is False


def test_scheduled_cancellation_stays_paid_until_period_end():
    sub = _sub(cancel_at_period_end=True, current_period_end=NOW + timedelta(hours=1))
    assert is_subscription_paid(sub, NOW) is True
    assert is_subscription_paid(sub, NOW + timedelta(hours=1)) is False


def test_soft_deleted_subscription_is_not_paid():
    assert is_subscription_paid(_sub(deleted_at=NOW - timedelta(days=1)), NOW) is False


def test_global_enterprise_wins_over_paid_module():
    tier, paid = resolve_effective_tier(ENTERPRISE, _sub(), NOW)
    assert tier == PlanTier.ENTERPRISE
    assert paid is True


def test_global_enterprise_unaffected_by_canceled_module():
    decision = evaluate(
        ENTERPRISE,
        ModuleId.CRM,
        "contacts",
        current_usage=5000,
        subscription=_sub(status=SubscriptionStatus.CANCELED),
        now=NOW,
    )
    assert decision.effective_tier == PlanTier.ENTERPRISE
    assert decision.is_unlimited is True


def test_downgrade_impact_lists_exceeded_quotas():
    impact = downgrade_impact(
        FREE,
        ModuleId.CRM,
        {"contacts": 150, "companies": 5, "deals": 3, "pipelines": 1, "custom_fields": 9},
    )

    assert impact.can_downgrade is False
    assert [e.feature for e in impact.exceeding] == ["contacts", "custom_fields"]
    assert impact.exceeding[0].free_limit == 100
    assert "150 in use" in impact.warning
    assert "No data will be deleted" in impact.warning


def test_downgrade_impact_at_limit_is_allowed():
    impact = downgrade_impact(
        FREE,
        ModuleId.CRM,
        {"contacts": 100, "companies": 20, "deals": 25, "pipelines": 1, "custom_fields": 3},
    )
    assert impact.can_downgrade is True
    assert impact.warning == ""


def test_downgrade_impact_requires_usage():
    with pytest.raises(UsageUnavailableError):
        downgrade_impact(FREE, ModuleId.CRM, {"contacts": 1})


def test_downgrade_impact_ignores_per_item_ceilings():
    impact = downgrade_impact(FREE, ModuleId.DOCS, {"storage_mb": 2048, "folders": 4})
    assert [e.feature for e in impact.exceeding] == ["storage_mb"]
