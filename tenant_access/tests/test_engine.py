"""
Tests for AccessDecisionEngine.

Tests cover:
- Gate ordering: status, then override or catalog, then role
- Override precedence in both directions
- Frozen/canceled tenants denied for every role
- Fail-closed behaviour when a collaborator raises
- Snapshot evaluation and denial auditing
- Any-of, read-only and tier-limit gates
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from tenant_access.constants.permissions import PermissionType, Role
from tenant_access.entitlements.engine import AccessDecisionEngine
from tenant_access.entitlements.errors import OverrideStoreError
from tenant_access.entitlements.models import (
    REASON_INSUFFICIENT_ROLE,
    REASON_SUBSCRIPTION_INACTIVE,
    REASON_UNAVAILABLE,
    REASON_UPGRADE_REQUIRED,
    Decision,
    DecisionSource,
    GateAction,
    MaintenanceState,
    OperationalStatus,
    TenantRecord,
)
from tenant_access.entitlements.permissions import PermissionResolver
from tenant_access.tests.conftest import NOW


def tenant(status="active", tier="starter", trial_ends_at=None, subscription_ends_at=None, tenant_id="t1"):
    return TenantRecord(
        id=tenant_id,
        subscription_status=status,
        subscription_tier=tier,
        trial_ends_at=trial_ends_at,
        subscription_ends_at=subscription_ends_at,
    )


class TestScenarios:

    def test_scenario_d_feature_not_in_tier(self, engine):
        decision = engine.evaluate(tenant(), "bulk_upload", PermissionType.WRITE, Role.TENANT_ADMIN)

        assert not decision.allowed
        assert decision.tier_issue
        assert not decision.role_issue
        assert decision.reason == REASON_UPGRADE_REQUIRED
        assert decision.suggested_tier == "professional"
        assert decision.source == DecisionSource.TIER

    def test_scenario_e_override_then_role_denial(self, engine, override_store):
        override_store.upsert("t1", "bulk_upload", True, "comped", "admin")

        decision = engine.evaluate(tenant(), "bulk_upload", PermissionType.WRITE, Role.TENANT_USER)

        assert not decision.allowed
        assert decision.role_issue
        assert not decision.tier_issue
        assert decision.reason == REASON_INSUFFICIENT_ROLE
        assert decision.source == DecisionSource.OVERRIDE

    def test_allowed_on_included_feature(self, engine):
        decision = engine.evaluate(tenant(tier="professional"), "bulk_upload", "write", "tenant_admin")

        assert decision.allowed
        assert decision.reason == ""
        assert decision.status == OperationalStatus.ACTIVE
        assert decision.gate_action() == GateAction.RENDER


class TestGateOrder:

    def test_role_issue_never_reported_with_tier_denial(self, engine):
        """A user who lacks both tier and role sees only the tier issue."""
        decision = engine.evaluate(tenant(), "bulk_upload", PermissionType.WRITE, Role.TENANT_USER)
        assert decision.tier_issue
        assert not decision.role_issue

    def test_role_checked_after_tier(self, engine):
        decision = engine.evaluate(tenant(tier="professional"), "bulk_upload", "read", Role.TENANT_USER)
        assert decision.role_issue
        assert decision.gate_action() == GateAction.CONTACT_ADMIN

    def test_unknown_tier_uses_default(self, engine):
        decision = engine.evaluate(tenant(tier="platinum"), "storefront", "read", Role.TENANT_USER)
        assert decision.allowed

    def test_feature_in_no_tier_has_no_suggestion(self, engine):
        decision = engine.evaluate(tenant(tier="enterprise"), "time_travel", "read", Role.PLATFORM_ADMIN)
        assert decision.tier_issue
        assert decision.suggested_tier is None

    def test_trialing_tenant_uses_tier(self, engine):
        trial = tenant(status="trial", tier="professional", trial_ends_at=NOW + timedelta(days=5))
        decision = engine.evaluate(trial, "bulk_upload", "write", Role.TENANT_MANAGER)
        assert decision.allowed
        assert decision.status == OperationalStatus.TRIALING


class TestOverridePrecedence:

    def test_grant_beats_missing_tier_feature(self, engine, override_store):
        override_store.upsert("t1", "white_label", True, "", "admin")
        decision = engine.evaluate(tenant(), "white_label", "read", Role.TENANT_USER)
        assert decision.allowed
        assert decision.source == DecisionSource.OVERRIDE

    def test_revocation_beats_tier_feature(self, engine, override_store):
        override_store.upsert("t1", "bulk_upload", False, "abuse", "admin")
        decision = engine.evaluate(tenant(tier="enterprise"), "bulk_upload", "read", Role.TENANT_ADMIN)
        assert decision.tier_issue
        assert decision.suggested_tier == "professional"
        assert decision.source == DecisionSource.OVERRIDE

    def test_expired_override_falls_back_to_tier(self, engine, override_store):
        override_store.upsert("t1", "bulk_upload", True, "", "admin", expires_at=NOW - timedelta(minutes=1))
        decision = engine.evaluate(tenant(), "bulk_upload", "read", Role.TENANT_ADMIN)
        assert decision.tier_issue
        assert decision.source == DecisionSource.TIER

    def test_override_is_per_tenant(self, engine, override_store):
        override_store.upsert("t2", "bulk_upload", True, "", "admin")
        decision = engine.evaluate(tenant(), "bulk_upload", "read", Role.TENANT_ADMIN)
        assert decision.tier_issue


class TestInactiveTenants:

    @pytest.mark.parametrize("record,expected", [
        (tenant(status="canceled", tier="enterprise"), OperationalStatus.CANCELED),
        (tenant(status="expired", tier="directory_only", trial_ends_at=NOW - timedelta(days=2)),
         OperationalStatus.FROZEN),
    ])
    def test_denied_for_every_role(self, engine, override_store, record, expected):
        override_store.upsert("t1", "directory_listing", True, "", "admin")

        for role in Role:
            decision = engine.evaluate(record, "directory_listing", "read", role)
            assert not decision.allowed
            assert decision.tier_issue
            assert decision.reason == REASON_SUBSCRIPTION_INACTIVE
            assert decision.status == expected
            assert decision.suggested_tier is None

    def test_maintenance_tenant_keeps_directory_features(self, engine):
        record = tenant(status="expired", tier="directory_only", trial_ends_at=NOW + timedelta(days=1))
        decision = engine.evaluate(record, "directory_listing", "read", Role.TENANT_USER)
        assert decision.allowed
        assert decision.status == OperationalStatus.MAINTENANCE

    def test_past_due_is_not_blocked_by_status(self, engine):
        decision = engine.evaluate(tenant(status="past_due"), "storefront", "read", Role.TENANT_USER)
        assert decision.allowed
        assert decision.status == OperationalStatus.PAST_DUE

    def test_maintenance_state(self, engine):
        record = tenant(status="expired", tier="directory_only", trial_ends_at=NOW - timedelta(days=1))
        assert engine.maintenance_state(record) == MaintenanceState.FREEZE
        assert engine.maintenance_state(tenant()) is None


class TestFailClosed:

    @pytest.fixture
    def broken_engine(self, catalog, audit):
        store = Mock()
        store.get.side_effect = OverrideStoreError("get", "t1", RuntimeError("db down"))
        return AccessDecisionEngine(
            catalog=catalog,
            override_store=store,
            permission_resolver=PermissionResolver(),
            audit_logger=audit,
            clock=lambda: NOW,
        )

    def test_store_failure_denies_without_issue_flags(self, broken_engine):
        decision = broken_engine.evaluate(tenant(tier="enterprise"), "bulk_upload", "read", Role.PLATFORM_ADMIN)

        assert not decision.allowed
        assert not decision.tier_issue
        assert not decision.role_issue
        assert decision.reason == REASON_UNAVAILABLE
        assert decision.is_unavailable
        assert decision.status == OperationalStatus.ACTIVE
        assert decision.gate_action() == GateAction.RETRY

    def test_failure_is_logged_critical(self, broken_engine, caplog):
        with caplog.at_level("CRITICAL"):
            broken_engine.evaluate(tenant(), "bulk_upload", "read", Role.TENANT_USER)

        records = [r for r in caplog.records if getattr(r, "alert_type", None) == "entitlement_eval_failed"]
        assert records

    def test_catalog_failure_denies(self, override_store):
        catalog = Mock()
        catalog.degraded_tier_id = "directory_only"
        catalog.lookup.side_effect = RuntimeError("corrupt catalog")
        engine = AccessDecisionEngine(catalog, override_store, PermissionResolver(), clock=lambda: NOW)

        decision = engine.evaluate(tenant(), "storefront", "read", Role.TENANT_USER)

        assert decision.is_unavailable

    def test_inactive_tenant_short_circuits_broken_store(self, broken_engine):
        decision = broken_engine.evaluate(tenant(status="canceled"), "storefront", "read", Role.TENANT_USER)
        assert decision.tier_issue
        assert decision.reason == REASON_SUBSCRIPTION_INACTIVE


class TestEvaluateMany:

    def test_snapshot_dedupes_and_preserves_order(self, engine):
        decisions = engine.evaluate_many(
            tenant(), ["storefront", "bulk_upload", "storefront"], "read", Role.TENANT_ADMIN
        )
        assert list(decisions) == ["storefront", "bulk_upload"]
        assert decisions["storefront"].allowed
        assert decisions["bulk_upload"].tier_issue

    def test_single_instant(self, catalog, override_store):
        """Every decision in a snapshot sees the same clock reading."""
        ticks = iter([NOW - timedelta(seconds=1), NOW + timedelta(seconds=1)])
        engine = AccessDecisionEngine(catalog, override_store, PermissionResolver(), clock=lambda: next(ticks))
        trial = tenant(status="trial", trial_ends_at=NOW)

        decisions = engine.evaluate_many(trial, ["storefront", "directory_listing"], "read", Role.TENANT_USER)

        assert {d.status for d in decisions.values()} == {OperationalStatus.TRIALING}


class TestEvaluateAny:

    def test_one_allowed_feature_is_enough(self, engine):
        decision = engine.evaluate_any(tenant(), ["bulk_upload", "storefront"], "read", Role.TENANT_USER)
        assert decision.allowed

    def test_all_tier_denials_returns_first(self, engine):
        decision = engine.evaluate_any(tenant(), ["bulk_upload", "api_access"], "write", Role.TENANT_ADMIN)
        assert decision.tier_issue
        assert decision.suggested_tier == "professional"

    def test_role_denial_preferred_over_tier_denial(self, engine):
        record = tenant(tier="professional")
        decision = engine.evaluate_any(record, ["api_access", "bulk_upload"], "write", Role.TENANT_USER)
        assert decision.role_issue
        assert not decision.tier_issue

    def test_unavailable_preferred_over_denials(self, catalog):
        store = Mock()
        store.get.side_effect = OverrideStoreError("get", "t1")
        engine = AccessDecisionEngine(catalog, store, PermissionResolver(), clock=lambda: NOW)

        decision = engine.evaluate_any(tenant(), ["bulk_upload", "storefront"], "read", Role.TENANT_USER)
        assert decision.is_unavailable

    def test_empty_feature_list_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.evaluate_any(tenant(), [], "read", Role.TENANT_USER)


class TestWriteGate:

    def test_frozen_tenant_is_read_only(self, engine):
        record = tenant(status="expired", tier="directory_only", trial_ends_at=NOW - timedelta(days=1))
        decision = engine.evaluate_write(record)

        assert not decision.allowed
        assert decision.tier_issue
        assert decision.reason == REASON_SUBSCRIPTION_INACTIVE
        assert decision.status == OperationalStatus.FROZEN

    def test_canceled_tenant_is_read_only(self, engine):
        assert not engine.evaluate_write(tenant(status="canceled")).allowed

    @pytest.mark.parametrize("record", [
        tenant(),
        tenant(status="past_due"),
        tenant(status="expired", tier="directory_only", trial_ends_at=NOW + timedelta(days=1)),
    ])
    def test_writable_tenants(self, engine, record):
        assert engine.evaluate_write(record).allowed


class TestLimitGate:

    def test_below_limit_allowed(self, engine):
        decision = engine.evaluate_limit(tenant(), "max_skus", lambda: 499)
        assert decision.allowed
        assert decision.source == DecisionSource.TIER

    def test_at_limit_suggests_tier_with_room(self, engine):
        decision = engine.evaluate_limit(tenant(), "max_skus", lambda: 500)

        assert not decision.allowed
        assert decision.tier_issue
        assert decision.reason == REASON_UPGRADE_REQUIRED
        assert decision.suggested_tier == "professional"

    def test_maintenance_tenant_cannot_grow_past_limit(self, engine):
        record = tenant(status="expired", tier="directory_only", trial_ends_at=NOW + timedelta(days=1))

        assert engine.evaluate_limit(record, "max_skus", lambda: 10).allowed
        decision = engine.evaluate_limit(record, "max_skus", lambda: 250)
        assert decision.tier_issue
        assert decision.status == OperationalStatus.MAINTENANCE
        assert decision.suggested_tier == "starter"

    def test_unlimited_tier(self, engine):
        assert engine.evaluate_limit(tenant(tier="enterprise"), "max_skus", lambda: 10**6).allowed

    def test_frozen_tenant_denied_without_counting(self, engine):
        usage_fn = Mock(return_value=0)
        record = tenant(status="expired", tier="directory_only", trial_ends_at=NOW - timedelta(days=1))

        decision = engine.evaluate_limit(record, "max_skus", usage_fn)

        assert decision.reason == REASON_SUBSCRIPTION_INACTIVE
        usage_fn.assert_not_called()

    def test_usage_failure_fails_closed(self, engine):
        def broken_usage():
            raise RuntimeError("count failed")

        decision = engine.evaluate_limit(tenant(), "max_skus", broken_usage)
        assert decision.is_unavailable

class TestAuditing:

    def test_denials_are_audited(self, catalog, override_store):
        audit = Mock()
        engine = AccessDecisionEngine(catalog, override_store, PermissionResolver(), audit, clock=lambda: NOW)

        engine.evaluate(tenant(), "bulk_upload", PermissionType.WRITE, Role.TENANT_ADMIN)

        event = audit.log_denial.call_args[0][0]
        assert event.tenant_id == "t1"
        assert event.feature == "bulk_upload"
        assert event.tier_issue
        assert event.suggested_tier == "professional"
        assert event.role == "tenant_admin"
        assert event.permission_type == "write"

    def test_allows_are_not_audited(self, catalog, override_store):
        audit = Mock()
        engine = AccessDecisionEngine(catalog, override_store, PermissionResolver(), audit, clock=lambda: NOW)

        engine.evaluate(tenant(), "storefront", "read", Role.TENANT_USER)

        audit.log_denial.assert_not_called()

    def test_audit_failure_does_not_change_decision(self, catalog, override_store):
        audit = Mock()
        audit.log_denial.side_effect = RuntimeError("log sink down")
        engine = AccessDecisionEngine(catalog, override_store, PermissionResolver(), audit, clock=lambda: NOW)

        decision = engine.evaluate(tenant(), "bulk_upload", "read", Role.TENANT_ADMIN)

        assert decision.tier_issue

    def test_fail_closed_uses_log_failure(self, catalog):
        audit_mock = Mock()
        store = Mock()
        store.get.side_effect = RuntimeError("boom")
        engine = AccessDecisionEngine(catalog, store, PermissionResolver(), audit_mock, clock=lambda: NOW)

        engine.evaluate(tenant(), "storefront", "read", Role.TENANT_USER)

        audit_mock.log_failure.assert_called_once()
        audit_mock.log_denial.assert_not_called()

    def test_aggregation_window(self):
        from tenant_access.entitlements.audit import AccessDenialEvent, EntitlementAuditLogger

        audit = EntitlementAuditLogger(aggregation_window_seconds=60)
        event = AccessDenialEvent("t1", "bulk_upload", "active", REASON_UPGRADE_REQUIRED)

        assert audit.log_denial(event) is True
        assert audit.log_denial(event) is False


class TestDecisionInvariants:

    def test_allowed_with_issue_rejected(self):
        with pytest.raises(ValueError):
            Decision(allowed=True, reason="", tier_issue=True)

    def test_both_issues_rejected(self):
        with pytest.raises(ValueError):
            Decision(allowed=False, reason="x", tier_issue=True, role_issue=True)

    def test_to_dict(self):
        data = Decision.deny_upgrade(OperationalStatus.ACTIVE, "professional", DecisionSource.TIER).to_dict()
        assert data == {
            "allowed": False,
            "reason": REASON_UPGRADE_REQUIRED,
            "tier_issue": True,
            "role_issue": False,
            "suggested_tier": "professional",
            "status": "active",
            "source": "tier",
            "gate_action": "upgrade",
        }
