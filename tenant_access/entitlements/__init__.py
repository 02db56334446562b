"""
Tenant lifecycle and feature access control.

This module provides:
- derive_status: pure operational status from raw subscription fields
- evaluate_maintenance: maintenance/freeze split for the degraded tier
- TierCatalog: tier entitlements, limits and upgrade suggestions
- OverrideStore: per-tenant feature grants/revocations (memory, SQL, cached)
- PermissionResolver: role/permission matrix
- AccessDecisionEngine: evaluate(tenant, feature, permission_type, role) -> Decision
- require_access: FastAPI dependency enforcing a Decision at the API boundary

Resolution order: status -> override -> tier -> role
"""

from tenant_access.entitlements.models import (
    Decision,
    DecisionSource,
    FeatureOverride,
    GateAction,
    MaintenanceState,
    OperationalStatus,
    SubscriptionStatus,
    TenantRecord,
)
from tenant_access.entitlements.errors import (
    AccessDeniedError,
    CatalogError,
    EntitlementError,
    OverrideStoreError,
)
from tenant_access.entitlements.catalog import (
    TierCatalog,
    TierDefinition,
    get_tier_catalog,
    load_tier_catalog,
)
from tenant_access.entitlements.maintenance import evaluate_maintenance, is_inactive
from tenant_access.entitlements.status import derive_status, derive_tenant_status
from tenant_access.entitlements.overrides import (
    CachedOverrideStore,
    InMemoryOverrideStore,
    OverrideStore,
    SqlOverrideStore,
)
from tenant_access.entitlements.permissions import PermissionResolver
from tenant_access.entitlements.engine import AccessDecisionEngine
from tenant_access.entitlements.audit import EntitlementAuditLogger, AccessDenialEvent

__all__ = [
    "Decision",
    "DecisionSource",
    "FeatureOverride",
    "GateAction",
    "MaintenanceState",
    "OperationalStatus",
    "SubscriptionStatus",
    "TenantRecord",
    "AccessDeniedError",
    "CatalogError",
    "EntitlementError",
    "OverrideStoreError",
    "TierCatalog",
    "TierDefinition",
    "get_tier_catalog",
    "load_tier_catalog",
    "evaluate_maintenance",
    "is_inactive",
    "derive_status",
    "derive_tenant_status",
    "OverrideStore",
    "InMemoryOverrideStore",
    "SqlOverrideStore",
    "CachedOverrideStore",
    "PermissionResolver",
    "AccessDecisionEngine",
    "EntitlementAuditLogger",
    "AccessDenialEvent",
]
