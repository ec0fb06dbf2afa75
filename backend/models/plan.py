"""
backend/models/plan.py

Plan tiers, billable modules and feature limits.

A feature limit is one of three kinds:
- quota: non-negative integer ceiling, UNLIMITED (-1) meaning no ceiling.
  A per-item quota bounds a single action (e.g. one upload) and has no
  running usage counter.
- capability: the feature is present or absent
- degrade: the feature is always present, rendered degraded when set
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


UNLIMITED = -1


class PlanTier(str, Enum):
    """Organization-wide subscription level."""
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def highest(cls, *tiers: "PlanTier") -> "PlanTier":
        return max(tiers, key=lambda tier: tier.rank)


_TIER_RANK = {PlanTier.FREE: 0, PlanTier.PRO: 1, PlanTier.ENTERPRISE: 2}


class ModuleId(str, Enum):
    """Independently billable product areas."""
    CRM = "crm"
    INVOICE = "invoice"
    PROJECTS = "projects"
    TICKETS = "tickets"
    HR = "hr"
    DOCS = "docs"
    ANALYTICS = "analytics"


class QuotaLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["quota"] = "quota"
    value: int = Field(ge=UNLIMITED)
    per_item: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.value == UNLIMITED


class CapabilityLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["capability"] = "capability"
    enabled: bool


class DegradeLimit(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["degrade"] = "degrade"
    degraded: bool


FeatureLimit = Annotated[
    Union[QuotaLimit, CapabilityLimit, DegradeLimit],
    Field(discriminator="kind"),
]


def quota(value: int) -> QuotaLimit:
    return QuotaLimit(value=value)


def ceiling(value: int) -> QuotaLimit:
    return QuotaLimit(value=value, per_item=True)


def capability(enabled: bool) -> CapabilityLimit:
    return CapabilityLimit(enabled=enabled)


def degrade(degraded: bool) -> DegradeLimit:
    return DegradeLimit(degraded=degraded)
