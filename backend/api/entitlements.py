"""
Entitlement API routes.

- GET /api/entitlements/{module_id}: paid flag plus a decision per feature
- GET /api/entitlements/{module_id}/{feature}: one decision (?requested=N checks an action of size N)
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.api.deps import get_context
from backend.core.errors import NotFoundError
from backend.features.entitlements.service import get_feature_limit, get_module_limits
from backend.features.plans.service import features_for
from backend.models.entitlement import EntitlementDecision, ModuleEntitlements, OrganizationContext
from backend.models.plan import ModuleId


router = APIRouter(prefix="/entitlements", tags=["entitlements"])


@router.get("/{module_id}", response_model=ModuleEntitlements)
async def module_entitlements(module_id: ModuleId, ctx: OrganizationContext = Depends(get_context)):
    return get_module_limits(ctx, module_id)


@router.get("/{module_id}/{feature}", response_model=EntitlementDecision)
async def feature_entitlement(
    module_id: ModuleId,
    feature: str,
    requested: Optional[int] = Query(None, ge=0),
    ctx: OrganizationContext = Depends(get_context),
):
    """
    Limit, usage and remaining for one feature.

    Errors:
        404: Unknown feature for the module
        503: The owning module could not report usage
    """
    if feature not in features_for(module_id):
        raise NotFoundError(f"Unknown feature {feature} for module {module_id.value}")
    return get_feature_limit(ctx, module_id, feature, requested=requested)
