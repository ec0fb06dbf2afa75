"""
Request-scoped dependencies shared by the API routers.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from backend.core.config import settings
from backend.features.organizations.service import get_organization_context
from backend.models.entitlement import OrganizationContext


logger = logging.getLogger("suite")


def get_organization_id(
    req: Request,
    x_organization_id: Optional[str] = Header(None),
) -> str:
    """Calling organization, set by the auth layer or passed as x-organization-id."""
    org_id = getattr(req.state, "organization_id", None) or x_organization_id
    if not org_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return org_id


def get_context(org_id: str = Depends(get_organization_id)) -> OrganizationContext:
    return get_organization_context(org_id)


def verify_admin_key(x_admin_key: Optional[str] = Header(None)) -> str:
    """Operator endpoints require the X-Admin-Key header to match ADMIN_KEY."""
    admin_key = settings.ADMIN_KEY
    if not x_admin_key:
        raise HTTPException(status_code=401, detail="Missing X-Admin-Key header")
    if not admin_key or not hmac.compare_digest(x_admin_key, admin_key):
        logger.warning(
            "[admin] invalid admin key attempt",
            extra={"key_prefix": x_admin_key[:4]},
        )
        raise HTTPException(status_code=403, detail="Invalid X-Admin-Key header")
    return x_admin_key
