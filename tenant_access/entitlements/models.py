"""
Entitlement models: canonical value types for the access engine.

Provides:
- SubscriptionStatus: raw billing signal written by the billing side
- OperationalStatus: derived lifecycle classification (never persisted)
- MaintenanceState: maintenance/freeze split for the degraded tier
- TenantRecord: read-only input record for the engine
- FeatureOverride: per-tenant, per-feature grant or revocation
- Decision: typed result of an access evaluation

All value objects are frozen dataclasses and safe to share across threads.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

# Degraded tier a tenant is auto-downgraded to when its subscription lapses.
DIRECTORY_ONLY_TIER = "directory_only"

REASON_SUBSCRIPTION_INACTIVE = "subscription inactive"
REASON_UPGRADE_REQUIRED = "upgrade required"
REASON_INSUFFICIENT_ROLE = "insufficient role"
REASON_UNAVAILABLE = "entitlements unavailable"


# ---------------------------------------------------------------------------
# Canonical enums
# ---------------------------------------------------------------------------

class SubscriptionStatus(str, Enum):
    """Raw subscription status as written by billing events."""
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def normalize(cls, raw: Optional[str]) -> str:
        """
        Lower-case and de-alias a raw status string.

        Unrecognised values are returned normalised but unchanged; the
        status deriver decides what to do with them.
        """
        value = (raw or "").strip().lower()
        aliases = {
            "cancelled": cls.CANCELED.value,
            "trialing": cls.TRIAL.value,
        }
        return aliases.get(value, value)


class OperationalStatus(str, Enum):
    """Derived lifecycle classification of a tenant at a point in time."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    MAINTENANCE = "maintenance"
    FROZEN = "frozen"
    CANCELED = "canceled"
    EXPIRED = "expired"

    def is_inactive(self) -> bool:
        """Frozen and canceled tenants are denied every feature."""
        return self in (OperationalStatus.FROZEN, OperationalStatus.CANCELED)


class MaintenanceState(str, Enum):
    """Sub-state of the degraded directory-only tier."""
    MAINTENANCE = "maintenance"
    FREEZE = "freeze"


class DecisionSource(str, Enum):
    """Which layer decided the tier gate."""
    OVERRIDE = "override"
    TIER = "tier"


class GateAction(str, Enum):
    """What a UI gate should render for a decision."""
    RENDER = "render"
    UPGRADE = "upgrade"
    CONTACT_ADMIN = "contact_admin"
    RETRY = "retry"


# ---------------------------------------------------------------------------
# Timestamp parsing
# ---------------------------------------------------------------------------

def parse_timestamp(value: Union[datetime, str, None]) -> Optional[datetime]:
    """
    Parse a boundary timestamp into an aware UTC datetime.

    Malformed input is treated as absent rather than raising, so a bad
    value falls through to the "no boundary" branch of the status rules.
    Naive datetimes are assumed to be UTC.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Ignoring malformed timestamp", extra={"value": text})
            return None
    else:
        logger.warning(
            "Ignoring timestamp of unsupported type",
            extra={"value_type": type(value).__name__},
        )
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Value objects (frozen dataclasses)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TenantRecord:
    """
    The four subscription fields the engine reads, plus the tenant id.

    Owned and mutated externally; read-only here.
    """
    id: str
    subscription_status: str
    subscription_tier: str
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None

    def __post_init__(self):
        # Coerce timestamps so callers may pass ISO strings straight from a payload.
        object.__setattr__(self, "trial_ends_at", parse_timestamp(self.trial_ends_at))
        object.__setattr__(
            self, "subscription_ends_at", parse_timestamp(self.subscription_ends_at)
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TenantRecord":
        """Build from a mapping using either snake_case or camelCase keys."""
        def pick(*keys):
            for key in keys:
                if key in data:
                    return data[key]
            return None

        return cls(
            id=str(pick("id", "tenant_id", "tenantId") or ""),
            subscription_status=pick("subscription_status", "subscriptionStatus") or "",
            subscription_tier=pick("subscription_tier", "subscriptionTier") or "",
            trial_ends_at=pick("trial_ends_at", "trialEndsAt"),
            subscription_ends_at=pick("subscription_ends_at", "subscriptionEndsAt"),
        )


@dataclass(frozen=True)
class FeatureOverride:
    """
    Per-tenant feature grant or revocation.

    Keyed by (tenant_id, feature). Upserts replace the previous value;
    no history is kept here.
    """
    tenant_id: str
    feature: str
    granted: bool
    reason: str
    granted_by: str
    updated_at: datetime
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["updated_at"] = _isoformat(self.updated_at)
        d["expires_at"] = _isoformat(self.expires_at)
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureOverride":
        return cls(
            tenant_id=data["tenant_id"],
            feature=data["feature"],
            granted=bool(data["granted"]),
            reason=data.get("reason", ""),
            granted_by=data["granted_by"],
            updated_at=parse_timestamp(data["updated_at"]),
            expires_at=parse_timestamp(data.get("expires_at")),
        )

    @classmethod
    def from_json(cls, raw: str) -> "FeatureOverride":
        return cls.from_dict(json.loads(raw))


@dataclass(frozen=True)
class Decision:
    """
    Result of an access evaluation. Ephemeral, never persisted.

    allowed=True implies neither tier_issue nor role_issue. A denial carries
    at most one of the two; a denial with neither is an infrastructure
    failure (reason REASON_UNAVAILABLE).
    """
    allowed: bool
    reason: str
    tier_issue: bool = False
    role_issue: bool = False
    suggested_tier: Optional[str] = None
    status: Optional[OperationalStatus] = None
    source: Optional[DecisionSource] = None

    def __post_init__(self):
        if self.allowed and (self.tier_issue or self.role_issue):
            raise ValueError("An allowed decision cannot carry a tier or role issue")
        if self.tier_issue and self.role_issue:
            raise ValueError("A decision cannot carry both a tier and a role issue")

    @classmethod
    def allow(
        cls,
        status: OperationalStatus,
        source: Optional[DecisionSource] = None,
    ) -> "Decision":
        return cls(allowed=True, reason="", status=status, source=source)

    @classmethod
    def deny_inactive(cls, status: OperationalStatus) -> "Decision":
        return cls(
            allowed=False,
            reason=REASON_SUBSCRIPTION_INACTIVE,
            tier_issue=True,
            status=status,
        )

    @classmethod
    def deny_upgrade(
        cls,
        status: OperationalStatus,
        suggested_tier: Optional[str],
        source: DecisionSource,
    ) -> "Decision":
        return cls(
            allowed=False,
            reason=REASON_UPGRADE_REQUIRED,
            tier_issue=True,
            suggested_tier=suggested_tier,
            status=status,
            source=source,
        )

    @classmethod
    def deny_role(
        cls,
        status: OperationalStatus,
        source: DecisionSource,
    ) -> "Decision":
        return cls(
            allowed=False,
            reason=REASON_INSUFFICIENT_ROLE,
            role_issue=True,
            status=status,
            source=source,
        )

    @classmethod
    def unavailable(cls, status: Optional[OperationalStatus] = None) -> "Decision":
        return cls(allowed=False, reason=REASON_UNAVAILABLE, status=status)

    @property
    def is_unavailable(self) -> bool:
        return not self.allowed and not self.tier_issue and not self.role_issue

    def gate_action(self) -> GateAction:
        """Map the decision onto the affordance a UI gate should render."""
        if self.allowed:
            return GateAction.RENDER
        if self.tier_issue:
            return GateAction.UPGRADE
        if self.role_issue:
            return GateAction.CONTACT_ADMIN
        return GateAction.RETRY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "tier_issue": self.tier_issue,
            "role_issue": self.role_issue,
            "suggested_tier": self.suggested_tier,
            "status": self.status.value if self.status else None,
            "source": self.source.value if self.source else None,
            "gate_action": self.gate_action().value,
        }
