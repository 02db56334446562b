"""
Structured error classes for entitlement enforcement.
"""

from typing import Optional

from fastapi import HTTPException, status

from tenant_access.entitlements.models import REASON_SUBSCRIPTION_INACTIVE, Decision


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class CatalogError(EntitlementError):
    """Raised when the tier catalog file cannot be read or is invalid."""

    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Tier catalog {path} is invalid: {detail}")


class OverrideStoreError(EntitlementError):
    """Raised when the override store cannot complete a read or write."""

    def __init__(self, operation: str, tenant_id: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.tenant_id = tenant_id
        self.cause = cause
        super().__init__(f"Override store {operation} failed for tenant {tenant_id}: {cause}")


class AccessDeniedError(HTTPException):
    """
    HTTP error carrying a denied Decision.

    Status code follows the denial kind:
    - tier issue (inactive subscription or upgrade required): 402
    - role issue: 403
    - engine unavailable: 503
    """

    def __init__(self, feature: str, decision: Decision, upgrade_url: str = "/settings/subscription"):
        self.feature = feature
        self.decision = decision

        if decision.tier_issue:
            status_code = status.HTTP_402_PAYMENT_REQUIRED
        elif decision.role_issue:
            status_code = status.HTTP_403_FORBIDDEN
        else:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE

        detail = {
            "error": "access_denied",
            "error_code": self._get_reason_code(decision),
            "feature": feature,
            **decision.to_dict(),
        }
        if decision.tier_issue:
            detail["upgrade_url"] = upgrade_url

        super().__init__(status_code=status_code, detail=detail)

    @staticmethod
    def _get_reason_code(decision: Decision) -> str:
        """Get machine-readable reason code."""
        if decision.is_unavailable:
            return "ENTITLEMENT_EVAL_FAILED"
        if decision.role_issue:
            return "ROLE_INSUFFICIENT"
        if decision.reason == REASON_SUBSCRIPTION_INACTIVE:
            return "SUBSCRIPTION_INACTIVE"
        return "PLAN_UPGRADE_REQUIRED"
