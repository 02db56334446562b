"""
Access Decision Engine - the single public contract for feature access.

evaluate(tenant, feature, permission_type, role) combines:
1. Status Deriver      -> frozen/canceled deny everyone
2. Override Store      -> per-tenant grant/revoke, else
3. Tier Catalog        -> tier entitlement, with an upgrade suggestion
4. Permission Resolver -> role check, reached only after the tier gate

evaluate_write() and evaluate_limit() gate mutations: frozen tenants are
read-only, and growth stops at the tier limit.

CRITICAL: Fail closed. Any collaborator failure yields a denial with
reason "entitlements unavailable" and neither issue flag, so the UI never
renders an upgrade prompt for an infrastructure fault.

The engine only reads from its collaborators and caches nothing; decisions
depend on trial/subscription boundaries and are recomputed on every call.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Union

from tenant_access.constants.permissions import PermissionType, Role
from tenant_access.entitlements.audit import AccessDenialEvent, EntitlementAuditLogger
from tenant_access.entitlements.catalog import TierCatalog
from tenant_access.entitlements.maintenance import evaluate_maintenance
from tenant_access.entitlements.models import (
    Decision,
    DecisionSource,
    MaintenanceState,
    OperationalStatus,
    TenantRecord,
)
from tenant_access.entitlements.overrides import OverrideStore
from tenant_access.entitlements.permissions import PermissionResolver
from tenant_access.entitlements.status import derive_tenant_status

logger = logging.getLogger(__name__)

# Feature name recorded on denials from the read-only gate
WRITE_GATE = "subscription_write"


class AccessDecisionEngine:
    """
    Orchestrates status, overrides, catalog and role matrix into a Decision.

    Collaborators are injected; the engine holds no mutable state and is
    safe to share across requests.
    """

    def __init__(
        self,
        catalog: TierCatalog,
        override_store: OverrideStore,
        permission_resolver: PermissionResolver,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._catalog = catalog
        self._overrides = override_store
        self._permissions = permission_resolver
        self._audit = audit_logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def catalog(self) -> TierCatalog:
        return self._catalog

    @property
    def override_store(self) -> OverrideStore:
        return self._overrides

    @property
    def permission_resolver(self) -> PermissionResolver:
        return self._permissions

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def derive_status(self, tenant: TenantRecord, now: Optional[datetime] = None) -> OperationalStatus:
        return derive_tenant_status(
            tenant,
            now or self._clock(),
            degraded_tier=self._catalog.degraded_tier_id,
        )

    def maintenance_state(
        self,
        tenant: TenantRecord,
        now: Optional[datetime] = None,
    ) -> Optional[MaintenanceState]:
        """Maintenance/freeze split, or None when not on the degraded tier."""
        return evaluate_maintenance(
            tenant.subscription_tier,
            tenant.subscription_status,
            tenant.trial_ends_at,
            now or self._clock(),
            degraded_tier=self._catalog.degraded_tier_id,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        tenant: TenantRecord,
        feature: str,
        permission_type: Union[PermissionType, str],
        role: Union[Role, str, None],
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Decide whether ``role`` may perform ``permission_type`` on ``feature``.

        Never raises for collaborator failures; see module docstring.
        """
        now = now or self._clock()
        status: Optional[OperationalStatus] = None

        try:
            status = self.derive_status(tenant, now)

            if status.is_inactive():
                decision = Decision.deny_inactive(status)
            else:
                decision = self._evaluate_gates(tenant, feature, permission_type, role, status, now)
        except Exception as exc:
            return self._fail_closed(tenant, feature, permission_type, role, status, exc)

        if not decision.allowed:
            self._audit_denial(tenant, feature, permission_type, role, decision)
        return decision

    def _evaluate_gates(
        self,
        tenant: TenantRecord,
        feature: str,
        permission_type: Union[PermissionType, str],
        role: Union[Role, str, None],
        status: OperationalStatus,
        now: datetime,
    ) -> Decision:
        override = self._overrides.get(tenant.id, feature, now=now)
        if override is not None:
            source = DecisionSource.OVERRIDE
            has_tier_access = override.granted
        else:
            source = DecisionSource.TIER
            has_tier_access = self._catalog.lookup(tenant.subscription_tier).has_feature(feature)

        if not has_tier_access:
            suggested = self._catalog.minimal_tier_with_feature(feature)
            return Decision.deny_upgrade(
                status,
                suggested.tier_id if suggested is not None else None,
                source,
            )

        if not self._permissions.check(role, feature, permission_type):
            return Decision.deny_role(status, source)

        return Decision.allow(status, source)

    def evaluate_many(
        self,
        tenant: TenantRecord,
        features: Iterable[str],
        permission_type: Union[PermissionType, str],
        role: Union[Role, str, None],
        now: Optional[datetime] = None,
    ) -> Dict[str, Decision]:
        """
        Evaluate several features at one instant.

        Used for page-level gate snapshots so every gate on a page sees the
        same status even if a boundary passes mid-request.
        """
        now = now or self._clock()
        return {
            feature: self.evaluate(tenant, feature, permission_type, role, now=now)
            for feature in dict.fromkeys(features)
        }

    def evaluate_any(
        self,
        tenant: TenantRecord,
        features: Iterable[str],
        permission_type: Union[PermissionType, str],
        role: Union[Role, str, None],
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Allow when at least one of ``features`` is allowed.

        When all are denied, an unavailable decision wins so the caller is
        told to retry; then a role denial, since the tier already covers that
        feature; then the first tier denial in the given order.
        """
        decisions = list(self.evaluate_many(tenant, features, permission_type, role, now).values())
        if not decisions:
            raise ValueError("evaluate_any needs at least one feature")

        for predicate in (
            lambda d: d.allowed,
            lambda d: d.is_unavailable,
            lambda d: d.role_issue,
        ):
            for decision in decisions:
                if predicate(decision):
                    return decision
        return decisions[0]

    def evaluate_write(self, tenant: TenantRecord, now: Optional[datetime] = None) -> Decision:
        """
        Decide whether the tenant may mutate data at all.

        Inactive tenants and degraded tenants whose maintenance window has
        closed (freeze) are read-only.
        """
        now = now or self._clock()
        status: Optional[OperationalStatus] = None

        try:
            status = self.derive_status(tenant, now)
            if status.is_inactive() or self.maintenance_state(tenant, now) == MaintenanceState.FREEZE:
                decision = Decision.deny_inactive(status)
            else:
                decision = Decision.allow(status)
        except Exception as exc:
            return self._fail_closed(tenant, WRITE_GATE, PermissionType.WRITE, None, status, exc)

        if not decision.allowed:
            self._audit_denial(tenant, WRITE_GATE, PermissionType.WRITE, None, decision)
        return decision

    def evaluate_limit(
        self,
        tenant: TenantRecord,
        limit_key: str,
        usage_fn: Callable[[], int],
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Decide whether the tenant may add one more unit counted by ``limit_key``.

        Read-only tenants are denied as in evaluate_write. Everyone else,
        maintenance tenants included, is denied once current usage reaches
        the tier limit, with the cheapest tier that has room suggested.
        """
        now = now or self._clock()
        status: Optional[OperationalStatus] = None

        try:
            decision = self.evaluate_write(tenant, now)
            if decision.allowed:
                status = decision.status
                tier_id = tenant.subscription_tier
                usage = usage_fn()
                if self._catalog.is_limit_reached(tier_id, limit_key, usage):
                    suggested = self._catalog.minimal_tier_with_capacity(limit_key, usage)
                    decision = Decision.deny_upgrade(
                        status,
                        suggested.tier_id if suggested is not None else None,
                        DecisionSource.TIER,
                    )
                    self._audit_denial(tenant, limit_key, PermissionType.WRITE, None, decision)
                else:
                    decision = Decision.allow(status, DecisionSource.TIER)
        except Exception as exc:
            return self._fail_closed(tenant, limit_key, PermissionType.WRITE, None, status, exc)

        return decision

    # ------------------------------------------------------------------
    # Failure / audit
    # ------------------------------------------------------------------

    def _fail_closed(
        self,
        tenant: TenantRecord,
        feature: str,
        permission_type: Union[PermissionType, str],
        role: Union[Role, str, None],
        status: Optional[OperationalStatus],
        exc: Exception,
    ) -> Decision:
        logger.critical(
            "ENTITLEMENT_EVAL_FAILED - denying access",
            extra={
                "alert_type": "entitlement_eval_failed",
                "tenant_id": tenant.id,
                "feature": feature,
                "error_type": type(exc).__name__,
                "error_detail": str(exc),
            },
        )
        decision = Decision.unavailable(status)
        if self._audit is not None:
            self._audit.log_failure(
                self._denial_event(tenant, feature, permission_type, role, decision),
                exc,
            )
        return decision

    def _audit_denial(
        self,
        tenant: TenantRecord,
        feature: str,
        permission_type: Union[PermissionType, str],
        role: Union[Role, str, None],
        decision: Decision,
    ) -> None:
        if self._audit is None:
            return
        try:
            self._audit.log_denial(
                self._denial_event(tenant, feature, permission_type, role, decision)
            )
        except Exception as exc:
            # The decision stands even if the audit write fails
            logger.error(
                "Failed to write access denial audit event",
                extra={"tenant_id": tenant.id, "feature": feature, "error": str(exc)},
            )

    @staticmethod
    def _denial_event(
        tenant: TenantRecord,
        feature: str,
        permission_type: Union[PermissionType, str],
        role: Union[Role, str, None],
        decision: Decision,
    ) -> AccessDenialEvent:
        return AccessDenialEvent(
            tenant_id=tenant.id,
            feature=feature,
            operational_status=decision.status.value if decision.status else None,
            reason=decision.reason,
            tier=tenant.subscription_tier,
            role=getattr(role, "value", role),
            permission_type=getattr(permission_type, "value", permission_type),
            tier_issue=decision.tier_issue,
            role_issue=decision.role_issue,
            suggested_tier=decision.suggested_tier,
        )
