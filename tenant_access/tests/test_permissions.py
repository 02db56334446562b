"""
Tests for the role/permission matrix.
"""

import pytest

from tenant_access.constants.permissions import (
    FEATURE_ROLE_SCOPES,
    ROLE_AUTHORITY,
    PermissionType,
    Role,
)
from tenant_access.entitlements.permissions import PermissionResolver

ROLES_BY_AUTHORITY = sorted(Role, key=lambda r: ROLE_AUTHORITY[r])
FEATURES = ["storefront", "bulk_upload", "api_access", "white_label", "organization_dashboard",
            "centralized_control", "custom_domain"]


@pytest.fixture
def resolver():
    return PermissionResolver()


class TestDefaults:

    def test_user_can_read_plain_feature(self, resolver):
        assert resolver.check(Role.TENANT_USER, "storefront", PermissionType.READ)

    def test_user_cannot_write_plain_feature(self, resolver):
        assert not resolver.check(Role.TENANT_USER, "storefront", PermissionType.WRITE)

    def test_manager_can_write_plain_feature(self, resolver):
        assert resolver.check(Role.TENANT_MANAGER, "storefront", PermissionType.WRITE)

    def test_admin_permission_needs_tenant_admin(self, resolver):
        assert not resolver.check(Role.TENANT_MANAGER, "storefront", PermissionType.ADMIN)
        assert resolver.check(Role.TENANT_ADMIN, "storefront", PermissionType.ADMIN)

    def test_feature_specific_minimum(self, resolver):
        assert not resolver.check(Role.TENANT_USER, "bulk_upload", PermissionType.READ)
        assert resolver.check(Role.TENANT_MANAGER, "bulk_upload", PermissionType.READ)
        assert not resolver.check(Role.TENANT_ADMIN, "centralized_control", PermissionType.READ)
        assert resolver.check(Role.ORG_ADMIN, "centralized_control", PermissionType.READ)

    def test_string_inputs_are_accepted(self, resolver):
        assert resolver.check("Tenant_Admin", "api_access", "WRITE")


class TestMonotonicity:

    @pytest.mark.parametrize("feature", FEATURES)
    @pytest.mark.parametrize("permission_type", list(PermissionType))
    def test_higher_roles_inherit(self, resolver, feature, permission_type):
        """Once a role passes, every more senior role passes too."""
        results = [resolver.check(role, feature, permission_type) for role in ROLES_BY_AUTHORITY]
        first_pass = results.index(True) if True in results else len(results)
        assert all(results[first_pass:])
        assert not any(results[:first_pass])


class TestScopedFeatures:

    @pytest.mark.parametrize("feature", sorted(FEATURE_ROLE_SCOPES))
    def test_only_platform_admin(self, resolver, feature):
        for role in Role:
            for permission_type in PermissionType:
                expected = role == Role.PLATFORM_ADMIN
                assert resolver.check(role, feature, permission_type) is expected

    def test_custom_scope(self):
        resolver = PermissionResolver(feature_scopes={"audit_export": frozenset({Role.ORG_ADMIN})})
        assert resolver.check(Role.ORG_ADMIN, "audit_export", PermissionType.READ)
        assert not resolver.check(Role.PLATFORM_ADMIN, "audit_export", PermissionType.READ)

    def test_min_role_for_scoped_is_none(self, resolver):
        assert resolver.min_role_for("feature_overrides", PermissionType.READ) is None


class TestUnknownInput:

    @pytest.mark.parametrize("role", [None, "", "superuser"])
    def test_unknown_role_denied(self, resolver, role):
        assert not resolver.check(role, "storefront", PermissionType.READ)

    def test_unknown_permission_type_denied(self, resolver):
        assert not resolver.check(Role.PLATFORM_ADMIN, "storefront", "delete")

    def test_unknown_role_logs_warning(self, resolver, caplog):
        with caplog.at_level("WARNING"):
            resolver.check("superuser", "storefront", "read")
        assert "unknown role" in caplog.text


class TestMinRoleFor:

    def test_feature_entry(self, resolver):
        assert resolver.min_role_for("api_access", "read") == Role.TENANT_ADMIN

    def test_falls_back_to_default(self, resolver):
        assert resolver.min_role_for("api_access", PermissionType.ADMIN) == Role.TENANT_ADMIN
        assert resolver.min_role_for("storefront", PermissionType.WRITE) == Role.TENANT_MANAGER

    def test_unknown_type(self, resolver):
        assert resolver.min_role_for("storefront", "delete") is None


class TestRoleParsing:

    def test_parse_known(self):
        assert Role.parse(" ORG_ADMIN ") == Role.ORG_ADMIN
        assert Role.parse(Role.TENANT_USER) is Role.TENANT_USER

    def test_parse_unknown(self):
        assert Role.parse("owner") is None
        assert PermissionType.parse(None) is None
