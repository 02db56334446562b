"""Database models."""

from tenant_access.models.tenant import Tenant
from tenant_access.models.feature_override import TenantFeatureOverride

__all__ = ["Tenant", "TenantFeatureOverride"]
