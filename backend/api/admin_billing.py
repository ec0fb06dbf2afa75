"""
Operator billing routes, guarded by X-Admin-Key.

- POST /v1/admin/billing/reconcile: Run one reconciliation sweep now
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from backend.api.deps import verify_admin_key
from backend.features.billing.reconcile_job import run_reconcile_job
from backend.features.billing.service import get_provider


logger = logging.getLogger("suite")

router = APIRouter(prefix="/v1/admin/billing", tags=["admin"])


class ReconcileRunResponse(BaseModel):
    """Counters from one reconciliation sweep."""
    expired: int
    confirmed: int
    corrections_applied: int
    errors: int
    failures: List[Dict[str, Any]]
    timestamp: str
    provider_enabled: bool


@router.post("/reconcile", response_model=ReconcileRunResponse)
def reconcile_billing(
    limit: int = Query(100, ge=1, le=1000, description="Max pending subscriptions to re-read"),
    _: str = Depends(verify_admin_key),
):
    """
    Expire lapsed cancellations and re-read stale optimistic writes.

    With billing disabled only the expiry pass runs.
    """
    provider = get_provider()
    logger.info(
        "[admin] running reconciliation",
        extra={"limit": limit, "provider_enabled": provider is not None},
    )
    result = run_reconcile_job(provider=provider, limit=limit)
    return ReconcileRunResponse(**result, provider_enabled=provider is not None)
