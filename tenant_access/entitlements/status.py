"""
Operational status derivation.

derive_status() is a pure, total function of the raw subscription fields and
the current instant. It is recomputed on every evaluation and never persisted.

Rules are checked in strict priority order; the first match wins:

1. canceled  -> CANCELED (terminal, beats unexpired trial or term)
2. past_due  -> PAST_DUE (grace handling belongs to billing)
3. trial     -> TRIALING while trial_ends_at is absent or in the future,
                else EXPIRED (the clock beats a stale raw field)
4. expired   -> MAINTENANCE/FROZEN on the degraded tier, else EXPIRED
5. active    -> EXPIRED once subscription_ends_at has passed,
                MAINTENANCE/FROZEN on the degraded tier, else ACTIVE
6. anything else -> ACTIVE (unrecognised input never denies service)
"""

import logging
from datetime import datetime
from typing import Optional, Union

from tenant_access.entitlements.maintenance import evaluate_maintenance
from tenant_access.entitlements.models import (
    DIRECTORY_ONLY_TIER,
    MaintenanceState,
    OperationalStatus,
    SubscriptionStatus,
    TenantRecord,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

Timestamp = Union[datetime, str, None]


def _degraded_status(
    tier: str,
    status: str,
    trial_ends_at: Optional[datetime],
    now: datetime,
    degraded_tier: str,
) -> OperationalStatus:
    state = evaluate_maintenance(tier, status, trial_ends_at, now, degraded_tier)
    if state == MaintenanceState.FREEZE:
        return OperationalStatus.FROZEN
    return OperationalStatus.MAINTENANCE


def derive_status(
    status: Optional[str],
    tier: Optional[str],
    trial_ends_at: Timestamp,
    subscription_ends_at: Timestamp,
    now: datetime,
    degraded_tier: str = DIRECTORY_ONLY_TIER,
) -> OperationalStatus:
    """
    Classify a tenant at ``now``.

    Timestamps may be datetimes or ISO-8601 strings; malformed values are
    treated as absent. ``now`` must be timezone-aware.
    """
    raw_status = SubscriptionStatus.normalize(status)
    tier = (tier or "").strip().lower()
    trial_ends = parse_timestamp(trial_ends_at)
    subscription_ends = parse_timestamp(subscription_ends_at)

    if raw_status == SubscriptionStatus.CANCELED:
        return OperationalStatus.CANCELED

    if raw_status == SubscriptionStatus.PAST_DUE:
        return OperationalStatus.PAST_DUE

    if raw_status == SubscriptionStatus.TRIAL:
        if trial_ends is None or trial_ends > now:
            return OperationalStatus.TRIALING
        return OperationalStatus.EXPIRED

    if raw_status == SubscriptionStatus.EXPIRED:
        if tier == degraded_tier:
            return _degraded_status(tier, raw_status, trial_ends, now, degraded_tier)
        return OperationalStatus.EXPIRED

    if raw_status == SubscriptionStatus.ACTIVE:
        if subscription_ends is not None and subscription_ends < now:
            return OperationalStatus.EXPIRED
        if tier == degraded_tier:
            # Active on the degraded tier should not happen, but must not crash
            return _degraded_status(tier, raw_status, trial_ends, now, degraded_tier)
        return OperationalStatus.ACTIVE

    logger.warning(
        "Unrecognised subscription status, treating as active",
        extra={"subscription_status": status},
    )
    return OperationalStatus.ACTIVE


def derive_tenant_status(
    tenant: TenantRecord,
    now: datetime,
    degraded_tier: str = DIRECTORY_ONLY_TIER,
) -> OperationalStatus:
    """Convenience wrapper over derive_status() for a TenantRecord."""
    return derive_status(
        tenant.subscription_status,
        tenant.subscription_tier,
        tenant.trial_ends_at,
        tenant.subscription_ends_at,
        now,
        degraded_tier=degraded_tier,
    )
