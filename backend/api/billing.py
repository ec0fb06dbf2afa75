"""
Billing API routes.

- POST /api/billing/checkout: Create checkout session for a module
- POST /api/billing/checkout/confirm: Provisionally record a completed checkout
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
- GET  /api/billing/modules: Every module with its subscription state
- POST /api/billing/modules/{module_id}/cancel|resume|cycle
- GET  /api/billing/modules/{module_id}/downgrade-impact
"""
from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Request, HTTPException
from pydantic import BaseModel

from backend.api.deps import get_context, get_organization_id
from backend.features.billing.service import (
    billing_enabled,
    start_module_checkout,
    confirm_checkout,
    start_portal,
    cancel_module,
    resume_module,
    switch_module_cycle,
    process_webhook_event,
)
from backend.features.entitlements.service import check_downgrade, list_module_subscriptions
from backend.models.entitlement import ModuleSubscriptionSummary, OrganizationContext
from backend.models.plan import ModuleId
from backend.models.subscription import BillingCycle, ModuleSubscription, SubscriptionStatus


router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    module_id: ModuleId
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    url: str


class ConfirmCheckoutRequest(BaseModel):
    session_id: str


class PortalRequest(BaseModel):
    """Request to create portal session."""
    return_url: str


class PortalResponse(BaseModel):
    """Response with portal URL."""
    url: str


class CancelRequest(BaseModel):
    at_period_end: bool = True


class CycleRequest(BaseModel):
    billing_cycle: BillingCycle


class SubscriptionResponse(BaseModel):
    """Module subscription as stored locally."""
    module_id: ModuleId
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    pending_confirmation: bool


class ExceededLimitResponse(BaseModel):
    feature: str
    label: str
    current: int
    free_limit: int


class DowngradeImpactResponse(BaseModel):
    module_id: ModuleId
    can_downgrade: bool
    exceeding: List[ExceededLimitResponse]
    warning: str


def _require_billing() -> None:
    if not billing_enabled():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Billing disabled",
                "code": "billing_disabled",
                "message": "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.",
            },
        )


def _subscription_response(sub: ModuleSubscription) -> dict:
    return {
        "module_id": sub.module_id,
        "status": sub.status,
        "billing_cycle": sub.billing_cycle,
        "current_period_end": sub.current_period_end,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "pending_confirmation": sub.pending_confirmation_since is not None,
    }


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(request: CheckoutRequest, org_id: str = Depends(get_organization_id)):
    """
    Create Stripe checkout session for one module.

    Returns:
        {"url": "https://checkout.stripe.com/..."}

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: No price configured for (module, cycle)
        502: Stripe API error
    """
    _require_billing()

    url = start_module_checkout(
        org_id=org_id,
        module=request.module_id,
        billing_cycle=request.billing_cycle,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    if not url:
        raise HTTPException(
            status_code=503,
            detail={"error": "Billing disabled", "code": "billing_disabled"},
        )
    return {"url": url}


@router.post("/checkout/confirm", response_model=SubscriptionResponse)
async def confirm_checkout_session(request: ConfirmCheckoutRequest, org_id: str = Depends(get_organization_id)):
    """Record the subscription from a completed checkout until its webhook lands."""
    _require_billing()
    sub = confirm_checkout(request.session_id, org_id=org_id)
    return _subscription_response(sub)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(request: PortalRequest, org_id: str = Depends(get_organization_id)):
    """
    Create Stripe billing portal session.

    Errors:
        503: Billing disabled
        404: Customer not found (organization never checked out)
        502: Stripe API error
    """
    _require_billing()

    url = start_portal(org_id=org_id, return_url=request.return_url)
    if not url:
        raise HTTPException(
            status_code=404,
            detail="Customer not found. Complete checkout first.",
        )
    return {"url": url}


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, deduplicates by event id and applies the mapped state
    change. Success is returned only after the write is committed.

    Errors:
        400: Invalid signature or payload
        500: Unmapped event type or store failure (Stripe retries)
        503: Billing disabled
    """
    _require_billing()

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    outcome = process_webhook_event(headers, body)
    return {
        "received": True,
        "event_id": outcome.event_id,
        "applied": outcome.applied,
        "duplicate": outcome.duplicate,
    }


@router.get("/modules", response_model=List[ModuleSubscriptionSummary])
async def list_modules(ctx: OrganizationContext = Depends(get_context)):
    """Every module with its lifecycle state, for the billing-settings screen."""
    return list_module_subscriptions(ctx)


@router.post("/modules/{module_id}/cancel", response_model=SubscriptionResponse)
async def cancel_module_subscription(
    module_id: ModuleId,
    request: CancelRequest,
    org_id: str = Depends(get_organization_id),
):
    _require_billing()
    sub = cancel_module(org_id, module_id, at_period_end=request.at_period_end)
    return _subscription_response(sub)


@router.post("/modules/{module_id}/resume", response_model=SubscriptionResponse)
async def resume_module_subscription(module_id: ModuleId, org_id: str = Depends(get_organization_id)):
    _require_billing()
    sub = resume_module(org_id, module_id)
    return _subscription_response(sub)


@router.post("/modules/{module_id}/cycle", response_model=SubscriptionResponse)
async def switch_module_billing_cycle(
    module_id: ModuleId,
    request: CycleRequest,
    org_id: str = Depends(get_organization_id),
):
    _require_billing()
    sub = switch_module_cycle(org_id, module_id, request.billing_cycle)
    return _subscription_response(sub)


@router.get("/modules/{module_id}/downgrade-impact", response_model=DowngradeImpactResponse)
async def get_downgrade_impact(module_id: ModuleId, ctx: OrganizationContext = Depends(get_context)):
    """Usage that would exceed the organization's own plan if the module subscription ended."""
    impact = check_downgrade(ctx, module_id)
    return {
        "module_id": impact.module_id,
        "can_downgrade": impact.can_downgrade,
        "exceeding": [
            {"feature": e.feature, "label": e.label, "current": e.current, "free_limit": e.free_limit}
            for e in impact.exceeding
        ],
        "warning": impact.warning,
    }
