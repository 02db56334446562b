"""
Access API routes consumed by UI gates.

The UI branches on the returned decision:
- tier_issue -> upgrade call-to-action
- role_issue -> "contact your administrator"
- allowed    -> render the protected content

Tenant identity always comes from the tenant context, never from the query.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from tenant_access.constants.permissions import PermissionType
from tenant_access.entitlements.engine import AccessDecisionEngine
from tenant_access.entitlements.middleware import get_access_engine, get_current_tenant
from tenant_access.entitlements.models import TenantRecord
from tenant_access.platform.tenant_context import get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["access"])

MAX_SNAPSHOT_FEATURES = 100


# Response models

class DecisionResponse(BaseModel):
    """Typed access decision for a single feature."""
    feature: str
    allowed: bool
    reason: str
    tier_issue: bool
    role_issue: bool
    suggested_tier: Optional[str] = None
    status: Optional[str] = None
    source: Optional[str] = None
    gate_action: str


class TierLimitsResponse(BaseModel):
    """Tier limits; null means unlimited."""
    max_skus: Optional[int] = None
    max_locations: Optional[int] = None


class AccessStatusResponse(BaseModel):
    """Operational status of the caller's tenant."""
    tenant_id: str
    subscription_tier: str
    tier_display_name: str
    operational_status: str
    maintenance_state: Optional[str] = None
    limits: TierLimitsResponse
    evaluated_at: str


class AccessSnapshotResponse(BaseModel):
    """Decisions for several features evaluated at one instant."""
    evaluated_at: str
    decisions: Dict[str, DecisionResponse]


def _to_response(feature: str, decision) -> DecisionResponse:
    return DecisionResponse(feature=feature, **decision.to_dict())


# Routes

@router.get("/status", response_model=AccessStatusResponse)
def get_access_status(
    tenant: TenantRecord = Depends(get_current_tenant),
    engine: AccessDecisionEngine = Depends(get_access_engine),
):
    """Get the tenant's operational status, tier and maintenance state."""
    now = datetime.now(timezone.utc)
    tier = engine.catalog.lookup(tenant.subscription_tier)
    op_status = engine.derive_status(tenant, now)
    maintenance = engine.maintenance_state(tenant, now)

    return AccessStatusResponse(
        tenant_id=tenant.id,
        subscription_tier=tier.tier_id,
        tier_display_name=tier.display_name,
        operational_status=op_status.value,
        maintenance_state=maintenance.value if maintenance else None,
        limits=TierLimitsResponse(max_skus=tier.max_skus, max_locations=tier.max_locations),
        evaluated_at=now.isoformat(),
    )


@router.get("/check", response_model=DecisionResponse)
def check_access(
    request: Request,
    feature: str = Query(..., min_length=1, max_length=255, description="Feature id"),
    permission_type: PermissionType = Query(PermissionType.READ, description="read, write or admin"),
    tenant: TenantRecord = Depends(get_current_tenant),
    engine: AccessDecisionEngine = Depends(get_access_engine),
):
    """
    Evaluate access to a single feature for the caller.

    Always returns 200 with the decision; enforcement is the job of
    require_access on the protected route itself.
    """
    ctx = get_tenant_context(request)
    decision = engine.evaluate(tenant, feature, permission_type, ctx.role)
    return _to_response(feature, decision)


@router.get("/snapshot", response_model=AccessSnapshotResponse)
def get_access_snapshot(
    request: Request,
    features: List[str] = Query(..., description="Feature ids"),
    permission_type: PermissionType = Query(PermissionType.READ),
    tenant: TenantRecord = Depends(get_current_tenant),
    engine: AccessDecisionEngine = Depends(get_access_engine),
):
    """Evaluate every gate on a page at the same instant."""
    if len(features) > MAX_SNAPSHOT_FEATURES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"At most {MAX_SNAPSHOT_FEATURES} features per snapshot",
        )

    ctx = get_tenant_context(request)
    now = datetime.now(timezone.utc)
    decisions = engine.evaluate_many(
        tenant, features, permission_type, ctx.role, now=now
    )
    return AccessSnapshotResponse(
        evaluated_at=now.isoformat(),
        decisions={f: _to_response(f, d) for f, d in decisions.items()},
    )
