"""
Canonical role/permission matrix for feature access.

IMPORTANT: This is the single source of truth for role-based feature access.
All role checks MUST go through PermissionResolver, which reads these tables.
UI permission gating is UX only - server-side enforcement is security.

Role Hierarchy (strict authority ordering):
    PLATFORM_ADMIN > ORG_ADMIN > TENANT_ADMIN > TENANT_MANAGER > TENANT_USER

A role belongs to a user's membership in a tenant (or platform-wide),
never to the tenant itself. This matrix knows nothing about tiers or
subscription status.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional


class Role(str, Enum):
    """User roles. Authority ordering lives in ROLE_AUTHORITY."""
    PLATFORM_ADMIN = "platform_admin"
    ORG_ADMIN = "org_admin"
    TENANT_ADMIN = "tenant_admin"
    TENANT_MANAGER = "tenant_manager"
    TENANT_USER = "tenant_user"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Role"]:
        """Parse a role name case-insensitively. Unknown names return None."""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None


class PermissionType(str, Enum):
    """Kind of action attempted against a feature."""
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PermissionType"]:
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None


# Higher number = more authority
ROLE_AUTHORITY: Dict[Role, int] = {
    Role.TENANT_USER: 10,
    Role.TENANT_MANAGER: 20,
    Role.TENANT_ADMIN: 30,
    Role.ORG_ADMIN: 40,
    Role.PLATFORM_ADMIN: 50,
}


# Minimum role for each permission type when a feature has no entry below
DEFAULT_MIN_ROLE: Dict[PermissionType, Role] = {
    PermissionType.READ: Role.TENANT_USER,
    PermissionType.WRITE: Role.TENANT_MANAGER,
    PermissionType.ADMIN: Role.TENANT_ADMIN,
}


# Per-feature minimum roles; permission types not listed use DEFAULT_MIN_ROLE
FEATURE_MIN_ROLES: Dict[str, Dict[PermissionType, Role]] = {
    "bulk_upload": {
        PermissionType.READ: Role.TENANT_MANAGER,
    },
    "custom_domain": {
        PermissionType.WRITE: Role.TENANT_ADMIN,
    },
    "api_access": {
        PermissionType.READ: Role.TENANT_ADMIN,
        PermissionType.WRITE: Role.TENANT_ADMIN,
    },
    "white_label": {
        PermissionType.WRITE: Role.TENANT_ADMIN,
    },
    "organization_dashboard": {
        PermissionType.READ: Role.TENANT_ADMIN,
        PermissionType.WRITE: Role.ORG_ADMIN,
        PermissionType.ADMIN: Role.ORG_ADMIN,
    },
    "centralized_control": {
        PermissionType.READ: Role.ORG_ADMIN,
        PermissionType.WRITE: Role.ORG_ADMIN,
        PermissionType.ADMIN: Role.ORG_ADMIN,
    },
}


# Features reachable only by an explicit role set, regardless of authority.
# No tenant-level role, however senior within its tenant, reaches these.
FEATURE_ROLE_SCOPES: Dict[str, FrozenSet[Role]] = {
    "feature_overrides": frozenset({Role.PLATFORM_ADMIN}),
    "tier_management": frozenset({Role.PLATFORM_ADMIN}),
    "platform_showcase": frozenset({Role.PLATFORM_ADMIN}),
}
