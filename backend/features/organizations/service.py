"""
backend/features/organizations/service.py

Organization plan registry.

Holds each organization's global plan tier and builds the
OrganizationContext passed explicitly into every entitlement call.
"""

from datetime import datetime, timezone

from sqlalchemy import select, insert, update

from backend.core.database import get_db_session, organizations
from backend.core.errors import ValidationError
from backend.models.entitlement import OrganizationContext
from backend.models.plan import PlanTier


def get_plan_tier(org_id: str) -> PlanTier:
    """Global tier of an organization; unknown organizations are FREE."""
    with get_db_session() as session:
        row = session.execute(
            select(organizations.c.plan_tier).where(organizations.c.org_id == org_id)
        ).first()

    if not row:
        return PlanTier.FREE
    return PlanTier(row.plan_tier)


def get_organization_context(org_id: str) -> OrganizationContext:
    return OrganizationContext(org_id=org_id, plan_tier=get_plan_tier(org_id))


def set_plan_tier(org_id: str, plan_tier) -> OrganizationContext:
    """
    Assign a global plan tier to an organization (creates or updates).

    Raises:
        ValidationError: If plan_tier is not a known tier
    """
    try:
        tier = PlanTier(plan_tier)
    except ValueError:
        raise ValidationError(f"Plan tier {plan_tier} not found")

    now = datetime.now(timezone.utc)

    with get_db_session() as session:
        existing = session.execute(
            select(organizations.c.org_id).where(organizations.c.org_id == org_id)
        ).first()

        if existing:
            session.execute(
                update(organizations)
                .where(organizations.c.org_id == org_id)
                .values(plan_tier=tier.value, updated_at=now)
            )
        else:
            session.execute(
                insert(organizations).values(
                    org_id=org_id,
                    plan_tier=tier.value,
                    created_at=now,
                    updated_at=now,
                )
            )

    return OrganizationContext(org_id=org_id, plan_tier=tier)
