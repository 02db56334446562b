"""
FastAPI enforcement of access decisions.

Mirrors the UI gate at the API boundary: a route that depends on
require_access() runs only when the engine allows the caller.

Usage:
    @router.post("/products/bulk")
    def bulk_upload(
        decision: Decision = Depends(require_access("bulk_upload", PermissionType.WRITE)),
    ):
        ...

Related gates:
- require_any_access(): any one of several features
- require_writable(): frozen tenants are read-only
- require_within_limit(): no growth past the tier limit

Denials are raised as AccessDeniedError:
- 402 for tier issues (inactive subscription or upgrade required)
- 403 for role issues
- 503 when the engine is unavailable
"""

import logging
from threading import Lock
from typing import Callable, Optional, Sequence, Union

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tenant_access.constants.permissions import PermissionType
from tenant_access.database.session import get_db_session, get_session_factory
from tenant_access.entitlements.audit import get_audit_logger
from tenant_access.entitlements.catalog import LIMIT_KEYS, get_tier_catalog
from tenant_access.entitlements.engine import WRITE_GATE, AccessDecisionEngine
from tenant_access.entitlements.errors import AccessDeniedError, EntitlementError
from tenant_access.entitlements.models import Decision, TenantRecord
from tenant_access.entitlements.overrides import CachedOverrideStore, SqlOverrideStore
from tenant_access.entitlements.permissions import PermissionResolver
from tenant_access.models.tenant import Tenant
from tenant_access.platform.tenant_context import get_tenant_context

logger = logging.getLogger(__name__)


# Module-level singleton
_engine_instance: Optional[AccessDecisionEngine] = None
_engine_lock = Lock()


def build_access_engine() -> AccessDecisionEngine:
    """Wire the engine from the process-wide catalog, database and audit logger."""
    override_store = CachedOverrideStore(SqlOverrideStore(get_session_factory()))
    return AccessDecisionEngine(
        catalog=get_tier_catalog(),
        override_store=override_store,
        permission_resolver=PermissionResolver(),
        audit_logger=get_audit_logger(),
    )


def get_access_engine() -> AccessDecisionEngine:
    """
    FastAPI dependency returning the shared AccessDecisionEngine.

    Raises 503 if the catalog or database is not configured, or the
    database engine cannot be built from DATABASE_URL.
    """
    global _engine_instance
    if _engine_instance is None:
        with _engine_lock:
            if _engine_instance is None:
                try:
                    _engine_instance = build_access_engine()
                except (ValueError, EntitlementError, SQLAlchemyError) as e:
                    logger.critical(
                        "ENTITLEMENT_EVAL_FAILED - access engine unavailable",
                        extra={
                            "alert_type": "entitlement_eval_failed",
                            "error_type": type(e).__name__,
                            "error_detail": str(e),
                        },
                    )
                    raise HTTPException(
                        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                        detail=Decision.unavailable().to_dict(),
                    )
    return _engine_instance


def reset_access_engine() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _engine_instance
    _engine_instance = None


def get_current_tenant(
    request: Request,
    db: Session = Depends(get_db_session),
) -> TenantRecord:
    """
    Load the caller's tenant record.

    A database failure is reported as 503 so gates render a retry, never
    an upgrade prompt.
    """
    ctx = get_tenant_context(request)
    try:
        tenant = db.query(Tenant).filter(Tenant.id == ctx.tenant_id).one_or_none()
    except SQLAlchemyError as e:
        logger.critical(
            "ENTITLEMENT_EVAL_FAILED - tenant record unavailable",
            extra={
                "alert_type": "entitlement_eval_failed",
                "tenant_id": ctx.tenant_id,
                "error_type": type(e).__name__,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=Decision.unavailable().to_dict(),
        )

    if tenant is None:
        logger.warning("Tenant not found", extra={"tenant_id": ctx.tenant_id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant not found",
        )
    return tenant.to_record()


def _enforce(request: Request, tenant: TenantRecord, gate: str, decision: Decision) -> Decision:
    """Raise AccessDeniedError for a denial, else record and return the decision."""
    if not decision.allowed:
        ctx = get_tenant_context(request)
        logger.info(
            "Access denied",
            extra={
                "tenant_id": tenant.id,
                "user_id": ctx.user_id,
                "feature": gate,
                "reason": decision.reason,
                "path": request.url.path,
                "method": request.method,
            },
        )
        raise AccessDeniedError(gate, decision)

    request.state.access_decision = decision
    return decision


def require_access(
    feature: str,
    permission_type: Union[PermissionType, str] = PermissionType.READ,
) -> Callable[..., Decision]:
    """
    Build a dependency that enforces access to ``feature``.

    The allowed Decision is returned to the route and stored on
    request.state.access_decision.
    """

    def dependency(
        request: Request,
        tenant: TenantRecord = Depends(get_current_tenant),
        engine: AccessDecisionEngine = Depends(get_access_engine),
    ) -> Decision:
        ctx = get_tenant_context(request)
        decision = engine.evaluate(tenant, feature, permission_type, ctx.role)
        return _enforce(request, tenant, feature, decision)

    return dependency


def require_any_access(
    features: Sequence[str],
    permission_type: Union[PermissionType, str] = PermissionType.READ,
) -> Callable[..., Decision]:
    """
    Build a dependency that passes when any one of ``features`` is allowed.

    Usage:
        @router.post("/integrations")
        def connect(
            decision: Decision = Depends(require_any_access(["api_access", "custom_integrations"])),
        ):
            ...
    """
    features = list(dict.fromkeys(features))
    if not features:
        raise ValueError("require_any_access needs at least one feature")
    gate = ",".join(features)

    def dependency(
        request: Request,
        tenant: TenantRecord = Depends(get_current_tenant),
        engine: AccessDecisionEngine = Depends(get_access_engine),
    ) -> Decision:
        ctx = get_tenant_context(request)
        decision = engine.evaluate_any(tenant, features, permission_type, ctx.role)
        return _enforce(request, tenant, gate, decision)

    return dependency


def require_writable() -> Callable[..., Decision]:
    """
    Build a dependency that rejects mutations from read-only tenants.

    Frozen and canceled tenants get 402 SUBSCRIPTION_INACTIVE.
    """

    def dependency(
        request: Request,
        tenant: TenantRecord = Depends(get_current_tenant),
        engine: AccessDecisionEngine = Depends(get_access_engine),
    ) -> Decision:
        return _enforce(request, tenant, WRITE_GATE, engine.evaluate_write(tenant))

    return dependency


def require_within_limit(
    limit_key: str,
    usage_fn: Callable[[TenantRecord, Session], int],
) -> Callable[..., Decision]:
    """
    Build a dependency that stops growth at the tenant's tier limit.

    ``usage_fn(tenant, db)`` returns the current count for ``limit_key``
    (for example the number of SKUs). At or above the limit the request is
    denied with 402 and the cheapest tier with room is suggested. A
    failing usage_fn is reported as 503.

    Usage:
        @router.post("/products")
        def create_product(
            decision: Decision = Depends(require_within_limit("max_skus", count_skus)),
        ):
            ...
    """
    if limit_key not in LIMIT_KEYS:
        raise ValueError(f"Unknown limit: {limit_key}")

    def dependency(
        request: Request,
        tenant: TenantRecord = Depends(get_current_tenant),
        engine: AccessDecisionEngine = Depends(get_access_engine),
        db: Session = Depends(get_db_session),
    ) -> Decision:
        decision = engine.evaluate_limit(tenant, limit_key, lambda: usage_fn(tenant, db))
        return _enforce(request, tenant, limit_key, decision)

    return dependency
