"""
Admin API routes for per-tenant feature overrides.

SECURITY: All routes require the admin permission on the platform-scoped
"feature_overrides" feature, which only PLATFORM_ADMIN holds.

The acting admin is recorded as granted_by; the target tenant comes from
the path because admins act on other tenants.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from tenant_access.constants.permissions import PermissionType
from tenant_access.entitlements.engine import AccessDecisionEngine
from tenant_access.entitlements.errors import OverrideStoreError
from tenant_access.entitlements.middleware import get_access_engine
from tenant_access.entitlements.models import FeatureOverride, parse_timestamp
from tenant_access.entitlements.overrides import OverrideStore
from tenant_access.platform.tenant_context import TenantContext, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/feature-overrides", tags=["admin-feature-overrides"])

OVERRIDE_ADMIN_FEATURE = "feature_overrides"


# Request/Response models

def _validate_feature_id(v: str) -> str:
    v = v.strip().lower()
    if not v.replace("_", "").replace("-", "").isalnum():
        raise ValueError("Feature must contain only alphanumeric characters, underscores, or hyphens")
    return v


class UpsertOverrideRequest(BaseModel):
    """Request to grant or revoke one feature."""
    granted: bool = Field(..., description="True = grant, False = revoke")
    reason: str = Field("", description="Why the override exists", max_length=2000)
    expires_at: Optional[datetime] = Field(None, description="Optional expiry (ISO-8601)")


class BulkOverrideRequest(BaseModel):
    """Request to apply the same grant/revoke to several features."""
    features: List[str] = Field(..., description="Feature ids", min_length=1, max_length=200)
    granted: bool = Field(True, description="True = grant, False = revoke")
    reason: str = Field("", max_length=2000)
    expires_at: Optional[datetime] = None

    @field_validator("features")
    @classmethod
    def validate_features(cls, v: List[str]) -> List[str]:
        return [_validate_feature_id(f) for f in v]


class OverrideResponse(BaseModel):
    """A stored feature override."""
    tenant_id: str
    feature: str
    granted: bool
    reason: str
    granted_by: str
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None


class OverridesListResponse(BaseModel):
    tenant_id: str
    overrides: List[OverrideResponse]
    total: int


class BulkOverrideResponse(BaseModel):
    tenant_id: str
    granted: bool
    written: int


class CleanupResponse(BaseModel):
    removed: int


def _to_response(override: FeatureOverride) -> OverrideResponse:
    return OverrideResponse(**override.to_dict())


def verify_override_admin(
    request: Request,
    engine: AccessDecisionEngine = Depends(get_access_engine),
) -> TenantContext:
    """
    Verify the caller may administer feature overrides.

    Uses the role matrix only: admin tooling is not gated by the admin's
    own subscription.
    """
    tenant_ctx = get_tenant_context(request)

    if not engine.permission_resolver.check(
        tenant_ctx.role, OVERRIDE_ADMIN_FEATURE, PermissionType.ADMIN
    ):
        logger.warning("Unauthorized feature override access attempt", extra={
            "tenant_id": tenant_ctx.tenant_id,
            "user_id": tenant_ctx.user_id,
            "role": tenant_ctx.role.value if tenant_ctx.role else None,
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Platform admin role required"
        )

    return tenant_ctx


def get_override_store(
    engine: AccessDecisionEngine = Depends(get_access_engine),
) -> OverrideStore:
    """Get the engine's override store, so writes invalidate its cache."""
    return engine.override_store


def _path_feature(feature: str) -> str:
    try:
        return _validate_feature_id(feature)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


def _check_expiry(expires_at: Optional[datetime]) -> Optional[datetime]:
    expires_at = parse_timestamp(expires_at)
    if expires_at is not None and expires_at <= datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="expires_at must be in the future"
        )
    return expires_at


def _store_unavailable(e: OverrideStoreError) -> HTTPException:
    logger.error("Override store failure", extra={
        "operation": e.operation,
        "tenant_id": e.tenant_id,
        "error": str(e.cause),
    })
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Override store unavailable"
    )


# Routes

@router.post("/cleanup-expired", response_model=CleanupResponse)
def cleanup_expired_overrides(
    admin_ctx: TenantContext = Depends(verify_override_admin),
    store: OverrideStore = Depends(get_override_store),
):
    """Delete every override whose expiry has passed."""
    try:
        removed = store.cleanup_expired()
    except OverrideStoreError as e:
        raise _store_unavailable(e)

    logger.info("Admin cleaned up expired overrides", extra={
        "user_id": admin_ctx.user_id,
        "removed": removed,
    })
    return CleanupResponse(removed=removed)


@router.get("/{tenant_id}", response_model=OverridesListResponse)
def list_overrides(
    tenant_id: str,
    include_expired: bool = Query(False, description="Include expired overrides"),
    admin_ctx: TenantContext = Depends(verify_override_admin),
    store: OverrideStore = Depends(get_override_store),
):
    """List a tenant's overrides."""
    try:
        overrides = store.list_for_tenant(tenant_id, include_expired=include_expired)
    except OverrideStoreError as e:
        raise _store_unavailable(e)

    return OverridesListResponse(
        tenant_id=tenant_id,
        overrides=[_to_response(o) for o in overrides],
        total=len(overrides),
    )


@router.put("/{tenant_id}/{feature}", response_model=OverrideResponse)
def upsert_override(
    tenant_id: str,
    feature: str,
    body: UpsertOverrideRequest,
    admin_ctx: TenantContext = Depends(verify_override_admin),
    store: OverrideStore = Depends(get_override_store),
):
    """Grant or revoke a feature for a tenant (last write wins)."""
    feature = _path_feature(feature)
    expires_at = _check_expiry(body.expires_at)

    try:
        store.upsert(tenant_id, feature, body.granted, body.reason, admin_ctx.user_id, expires_at)
        override = store.get(tenant_id, feature)
    except OverrideStoreError as e:
        raise _store_unavailable(e)

    logger.info("Admin wrote feature override", extra={
        "tenant_id": tenant_id,
        "feature": feature,
        "granted": body.granted,
        "user_id": admin_ctx.user_id,
    })

    if override is None:
        # Deleted or expired between write and read-back
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Override changed concurrently"
        )
    return _to_response(override)


@router.delete("/{tenant_id}/{feature}", status_code=status.HTTP_204_NO_CONTENT)
def delete_override(
    tenant_id: str,
    feature: str,
    admin_ctx: TenantContext = Depends(verify_override_admin),
    store: OverrideStore = Depends(get_override_store),
):
    """Remove an override so the tier catalog decides again."""
    feature = _path_feature(feature)
    try:
        deleted = store.delete(tenant_id, feature)
    except OverrideStoreError as e:
        raise _store_unavailable(e)

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Override not found: {tenant_id}/{feature}"
        )

    logger.info("Admin deleted feature override", extra={
        "tenant_id": tenant_id,
        "feature": feature,
        "user_id": admin_ctx.user_id,
    })


@router.post("/{tenant_id}/bulk", response_model=BulkOverrideResponse)
def bulk_override(
    tenant_id: str,
    body: BulkOverrideRequest,
    admin_ctx: TenantContext = Depends(verify_override_admin),
    store: OverrideStore = Depends(get_override_store),
):
    """
    Apply the same grant/revoke to a list of features.

    Used by showcase tooling to grant a fixed feature list to a demo tenant.
    """
    expires_at = _check_expiry(body.expires_at)

    try:
        written = store.bulk_upsert(
            tenant_id, body.features, body.granted, body.reason, admin_ctx.user_id, expires_at
        )
    except OverrideStoreError as e:
        raise _store_unavailable(e)

    return BulkOverrideResponse(tenant_id=tenant_id, granted=body.granted, written=written)
