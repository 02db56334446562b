"""
Entitlement Audit Logger - structured events for access denials.

Provides:
- AccessDenialEvent: structured denial event
- EntitlementAuditLogger: writes events to the "entitlements.audit" logger

Repeated denials of the same (tenant, feature, reason) inside the
aggregation window are logged once. Fail-closed events are never aggregated.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")

DEFAULT_AGGREGATION_WINDOW_SECONDS = 60


@dataclass
class AccessDenialEvent:
    """Structured event for an access denial."""

    tenant_id: str
    feature: str
    operational_status: Optional[str]
    reason: str
    tier: Optional[str] = None
    role: Optional[str] = None
    permission_type: Optional[str] = None
    tier_issue: bool = False
    role_issue: bool = False
    suggested_tier: Optional[str] = None
    user_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    extra_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EntitlementAuditLogger:
    """
    Synchronous audit logger for entitlement denials.

    Usage:
        audit = EntitlementAuditLogger()
        audit.log_denial(AccessDenialEvent(
            tenant_id="tenant_123",
            feature="bulk_upload",
            operational_status="active",
            reason="upgrade required",
            tier_issue=True,
            suggested_tier="professional",
        ))
    """

    def __init__(self, aggregation_window_seconds: int = DEFAULT_AGGREGATION_WINDOW_SECONDS):
        self._aggregation_window_seconds = aggregation_window_seconds
        self._recent_denials: Dict[str, float] = {}
        self._aggregation_lock = Lock()

    def log_denial(self, event: AccessDenialEvent) -> bool:
        """
        Log an access denial. Returns False when aggregated away.
        """
        agg_key = f"{event.tenant_id}:{event.feature}:{event.reason}"
        if not self._check_aggregation(agg_key):
            return False

        audit_logger.warning(
            "access_denied",
            extra={
                "event_type": "access_denied",
                "audit_data": event.to_dict(),
            },
        )
        return True

    def log_failure(self, event: AccessDenialEvent, error: Exception) -> None:
        """Log a fail-closed evaluation. Always written."""
        audit_logger.critical(
            "entitlement_eval_failed",
            extra={
                "event_type": "entitlement_eval_failed",
                "alert_type": "entitlement_eval_failed",
                "error_type": type(error).__name__,
                "audit_data": event.to_dict(),
            },
        )

    def _check_aggregation(self, key: str) -> bool:
        """False if the same key was logged inside the aggregation window."""
        if self._aggregation_window_seconds <= 0:
            return True

        now = datetime.now(timezone.utc).timestamp()
        with self._aggregation_lock:
            cutoff = now - self._aggregation_window_seconds
            self._recent_denials = {
                k: v for k, v in self._recent_denials.items() if v > cutoff
            }
            if key in self._recent_denials:
                return False
            self._recent_denials[key] = now
            return True


# Module-level singleton accessor
_audit_logger_instance: Optional[EntitlementAuditLogger] = None
_audit_logger_lock = Lock()


def get_audit_logger() -> EntitlementAuditLogger:
    """Get the singleton audit logger instance."""
    global _audit_logger_instance
    if _audit_logger_instance is None:
        with _audit_logger_lock:
            if _audit_logger_instance is None:
                _audit_logger_instance = EntitlementAuditLogger()
    return _audit_logger_instance


def reset_audit_logger() -> None:
    """
    Reset the audit logger singleton (for testing).

    WARNING: Only use in tests!
    """
    global _audit_logger_instance
    _audit_logger_instance = None
