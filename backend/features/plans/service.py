"""
backend/features/plans/service.py

Plan catalog.

Static, process-wide definition of plan tiers and, per tier, the feature
limits of every billable module. Values change only between deploys, so
callers must go through limit_of() on every evaluation instead of caching
limits across a request boundary.
"""

import logging
from typing import Dict, Iterator, List, Tuple

from backend.core.errors import ConfigurationError
from backend.models.plan import (
    UNLIMITED,
    FeatureLimit,
    ModuleId,
    PlanTier,
    QuotaLimit,
    capability,
    ceiling,
    degrade,
    quota,
)


logger = logging.getLogger("suite")


# Tier a module resolves to while it has its own paid subscription
PAID_MODULE_TIER = PlanTier.PRO


PLAN_CATALOG: Dict[PlanTier, Dict[ModuleId, Dict[str, FeatureLimit]]] = {
    PlanTier.FREE: {
        ModuleId.CRM: {
            "contacts": quota(100),
            "companies": quota(20),
            "deals": quota(25),
            "pipelines": quota(1),
            "custom_fields": quota(3),
            "stats_blurred": degrade(True),
            "export_enabled": capability(False),
            "automations_enabled": capability(False),
        },
        ModuleId.INVOICE: {
            "invoices_per_month": quota(10),
            "quotes_per_month": quota(10),
            "clients": quota(20),
            "products": quota(50),
            "watermark_pdf": degrade(True),
            "recurring_enabled": capability(False),
            "reminders_enabled": capability(False),
        },
        ModuleId.PROJECTS: {
            "projects": quota(3),
            "tasks_per_project": quota(50),
            "members_per_project": quota(3),
            "storage_gb": quota(1),
            "gantt_blurred": degrade(True),
            "time_tracking_enabled": capability(False),
        },
        ModuleId.TICKETS: {
            "tickets_per_month": quota(50),
            "agents": quota(1),
            "kb_articles": quota(10),
            "canned_responses": quota(10),
            "sla_enabled": capability(False),
            "automations_enabled": capability(False),
        },
        ModuleId.HR: {
            "employees": quota(5),
            "leave_types": quota(3),
            "contracts_per_employee": quota(2),
            "documents_enabled": capability(False),
        },
        ModuleId.DOCS: {
            "storage_mb": quota(1024),
            "folders": quota(10),
            "max_file_size_mb": ceiling(10),
            "version_history": capability(False),
            "file_locking": capability(False),
            "external_sharing": capability(False),
        },
        ModuleId.ANALYTICS: {
            "dashboards": quota(3),
            "widgets_per_dashboard": quota(6),
            "export_reports": capability(False),
            "scheduled_reports": capability(False),
            "ai_insights": capability(False),
        },
    },
    PlanTier.PRO: {
        ModuleId.CRM: {
            "contacts": quota(10000),
            "companies": quota(2000),
            "deals": quota(UNLIMITED),
            "pipelines": quota(10),
            "custom_fields": quota(50),
            "stats_blurred": degrade(False),
            "export_enabled": capability(True),
            "automations_enabled": capability(True),
        },
        ModuleId.INVOICE: {
            "invoices_per_month": quota(UNLIMITED),
            "quotes_per_month": quota(UNLIMITED),
            "clients": quota(UNLIMITED),
            "products": quota(UNLIMITED),
            "watermark_pdf": degrade(False),
            "recurring_enabled": capability(True),
            "reminders_enabled": capability(True),
        },
        ModuleId.PROJECTS: {
            "projects": quota(50),
            "tasks_per_project": quota(UNLIMITED),
            "members_per_project": quota(20),
            "storage_gb": quota(50),
            "gantt_blurred": degrade(False),
            "time_tracking_enabled": capability(True),
        },
        ModuleId.TICKETS: {
            "tickets_per_month": quota(UNLIMITED),
            "agents": quota(10),
            "kb_articles": quota(UNLIMITED),
            "canned_responses": quota(UNLIMITED),
            "sla_enabled": capability(True),
            "automations_enabled": capability(True),
        },
        ModuleId.HR: {
            "employees": quota(UNLIMITED),
            "leave_types": quota(UNLIMITED),
            "contracts_per_employee": quota(UNLIMITED),
            "documents_enabled": capability(True),
        },
        ModuleId.DOCS: {
            "storage_mb": quota(102400),
            "folders": quota(UNLIMITED),
            "max_file_size_mb": ceiling(100),
            "version_history": capability(True),
            "file_locking": capability(True),
            "external_sharing": capability(True),
        },
        ModuleId.ANALYTICS: {
            "dashboards": quota(UNLIMITED),
            "widgets_per_dashboard": quota(20),
            "export_reports": capability(True),
            "scheduled_reports": capability(True),
            "ai_insights": capability(True),
        },
    },
    PlanTier.ENTERPRISE: {
        ModuleId.CRM: {
            "contacts": quota(UNLIMITED),
            "companies": quota(UNLIMITED),
            "deals": quota(UNLIMITED),
            "pipelines": quota(UNLIMITED),
            "custom_fields": quota(UNLIMITED),
            "stats_blurred": degrade(False),
            "export_enabled": capability(True),
            "automations_enabled": capability(True),
        },
        ModuleId.INVOICE: {
            "invoices_per_month": quota(UNLIMITED),
            "quotes_per_month": quota(UNLIMITED),
            "clients": quota(UNLIMITED),
            "products": quota(UNLIMITED),
            "watermark_pdf": degrade(False),
            "recurring_enabled": capability(True),
            "reminders_enabled": capability(True),
        },
        ModuleId.PROJECTS: {
            "projects": quota(UNLIMITED),
            "tasks_per_project": quota(UNLIMITED),
            "members_per_project": quota(UNLIMITED),
            "storage_gb": quota(UNLIMITED),
            "gantt_blurred": degrade(False),
            "time_tracking_enabled": capability(True),
        },
        ModuleId.TICKETS: {
            "tickets_per_month": quota(UNLIMITED),
            "agents": quota(UNLIMITED),
            "kb_articles": quota(UNLIMITED),
            "canned_responses": quota(UNLIMITED),
            "sla_enabled": capability(True),
            "automations_enabled": capability(True),
        },
        ModuleId.HR: {
            "employees": quota(UNLIMITED),
            "leave_types": quota(UNLIMITED),
            "contracts_per_employee": quota(UNLIMITED),
            "documents_enabled": capability(True),
        },
        ModuleId.DOCS: {
            "storage_mb": quota(UNLIMITED),
            "folders": quota(UNLIMITED),
            "max_file_size_mb": ceiling(UNLIMITED),
            "version_history": capability(True),
            "file_locking": capability(True),
            "external_sharing": capability(True),
        },
        ModuleId.ANALYTICS: {
            "dashboards": quota(UNLIMITED),
            "widgets_per_dashboard": quota(UNLIMITED),
            "export_reports": capability(True),
            "scheduled_reports": capability(True),
            "ai_insights": capability(True),
        },
    },
}


FEATURE_LABELS: Dict[Tuple[ModuleId, str], str] = {
    (ModuleId.CRM, "contacts"): "contacts",
    (ModuleId.CRM, "companies"): "companies",
    (ModuleId.CRM, "deals"): "deals",
    (ModuleId.CRM, "pipelines"): "pipelines",
    (ModuleId.CRM, "custom_fields"): "custom fields",
    (ModuleId.INVOICE, "invoices_per_month"): "invoices this month",
    (ModuleId.INVOICE, "quotes_per_month"): "quotes this month",
    (ModuleId.INVOICE, "clients"): "clients",
    (ModuleId.INVOICE, "products"): "products",
    (ModuleId.PROJECTS, "projects"): "projects",
    (ModuleId.PROJECTS, "tasks_per_project"): "tasks per project",
    (ModuleId.PROJECTS, "members_per_project"): "members per project",
    (ModuleId.PROJECTS, "storage_gb"): "storage (GB)",
    (ModuleId.TICKETS, "tickets_per_month"): "tickets this month",
    (ModuleId.TICKETS, "agents"): "agents",
    (ModuleId.TICKETS, "kb_articles"): "knowledge base articles",
    (ModuleId.TICKETS, "canned_responses"): "canned responses",
    (ModuleId.HR, "employees"): "employees",
    (ModuleId.HR, "leave_types"): "leave types",
    (ModuleId.HR, "contracts_per_employee"): "contracts per employee",
    (ModuleId.DOCS, "storage_mb"): "storage (MB)",
    (ModuleId.DOCS, "folders"): "folders",
    (ModuleId.DOCS, "max_file_size_mb"): "file size (MB)",
    (ModuleId.DOCS, "file_locking"): "file locking",
    (ModuleId.DOCS, "external_sharing"): "external sharing",
    (ModuleId.ANALYTICS, "dashboards"): "dashboards",
    (ModuleId.ANALYTICS, "widgets_per_dashboard"): "widgets per dashboard",
    (ModuleId.ANALYTICS, "scheduled_reports"): "scheduled reports",
    (ModuleId.ANALYTICS, "ai_insights"): "AI insights",
}


def coerce_module(module) -> ModuleId:
    try:
        return ModuleId(module)
    except ValueError:
        raise ConfigurationError(f"Unknown module: {module!r}")


def _coerce_tier(plan) -> PlanTier:
    try:
        return PlanTier(plan)
    except ValueError:
        raise ConfigurationError(f"Unknown plan tier: {plan!r}")


def limit_of(plan, module, feature: str) -> FeatureLimit:
    """
    Resolve the limit for a (plan, module, feature) triple.

    Raises:
        ConfigurationError: if the triple is not in the catalog
    """
    tier = _coerce_tier(plan)
    module_id = coerce_module(module)
    try:
        return PLAN_CATALOG[tier][module_id][feature]
    except KeyError:
        logger.critical(
            "[catalog] missing limit",
            extra={"plan_tier": tier.value, "module_id": module_id.value, "feature": feature},
        )
        raise ConfigurationError(
            f"No limit configured for plan={tier.value} module={module_id.value} feature={feature}"
        )


def features_for(module) -> List[str]:
    """Feature names defined for a module (identical across tiers)."""
    module_id = coerce_module(module)
    return list(PLAN_CATALOG[PlanTier.FREE][module_id].keys())


def is_counted(module, feature: str) -> bool:
    """Whether the feature is a quota tracked by a running usage counter."""
    limit = limit_of(PlanTier.FREE, module, feature)
    return isinstance(limit, QuotaLimit) and not limit.per_item


def iter_catalog() -> Iterator[Tuple[PlanTier, ModuleId, str, FeatureLimit]]:
    for tier, modules in PLAN_CATALOG.items():
        for module_id, features in modules.items():
            for feature, limit in features.items():
                yield tier, module_id, feature, limit


def feature_label(module, feature: str) -> str:
    module_id = coerce_module(module)
    return FEATURE_LABELS.get((module_id, feature), feature.replace("_", " "))


def validate_catalog() -> None:
    """
    Check that every tier defines the same features, with the same kind,
    for every module. Run at import so a broken deploy fails to start.
    """
    for module_id in ModuleId:
        reference = None
        for tier in PlanTier:
            features = PLAN_CATALOG.get(tier, {}).get(module_id)
            if features is None:
                raise ConfigurationError(f"Plan {tier.value} is missing module {module_id.value}")
            shape = {name: (limit.kind, getattr(limit, "per_item", False)) for name, limit in features.items()}
            if reference is None:
                reference = shape
            elif shape != reference:
                raise ConfigurationError(
                    f"Plan {tier.value} disagrees with other tiers on module {module_id.value} features"
                )


validate_catalog()
